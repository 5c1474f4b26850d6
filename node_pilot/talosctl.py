"""Talos node API access through the talosctl binary."""

import asyncio
import re

from ruamel.yaml import YAML

from node_pilot.api import NodeApi
from node_pilot.exceptions import TalosError
from node_pilot.logging_config import get_logger
from node_pilot.models.context import ClusterContext
from node_pilot.models.health import EtcdPeerView, EtcdReport
from node_pilot.models.topology import NodeIdentity, Role

logger = get_logger(__name__)

TALOSCTL = "talosctl"


def parse_resources(yaml_str: str) -> list[dict]:
    """Parse the multi-document YAML printed by ``talosctl get ... -o yaml``."""
    yaml = YAML(typ="safe")
    try:
        docs = [d for d in yaml.load_all(yaml_str) if isinstance(d, dict)]
    except Exception as e:
        raise TalosError("Failed to parse talosctl output", str(e))
    return docs


def _spec(doc: dict):
    return doc.get("spec")


def parse_addresses(docs: list[dict]) -> tuple[list[str], list[str]]:
    """Split AddressStatus resources into (own addresses, shared/VIP addresses).

    Loopback and link-local addresses are ignored. CIDR suffixes are stripped.
    """
    own: list[str] = []
    shared: list[str] = []
    for doc in docs:
        spec = _spec(doc) or {}
        address = str(spec.get("address") or "").split("/")[0]
        if not address or spec.get("scope") == "host":
            continue
        if address.startswith(("127.", "169.254.", "fe80:")) or address == "::1":
            continue
        flags = spec.get("flags") or []
        if isinstance(flags, str):
            flags = [f.strip() for f in flags.split(",")]
        target = shared if any("vip" in str(f).lower() for f in flags) else own
        if address not in target:
            target.append(address)
    return own, shared


def parse_table(output: str) -> list[dict[str, str]]:
    """Parse a tabwriter table as printed by ``talosctl etcd ...``.

    Column boundaries come from the header line; header names may contain
    single spaces (``DB SIZE``, ``PEER URLS``).
    """
    lines = [line for line in output.splitlines() if line.strip()]
    if not lines:
        return []

    header = lines[0]
    columns = [(m.group(0), m.start()) for m in re.finditer(r"\S+(?: \S+)*", header)]
    rows = []
    for line in lines[1:]:
        row = {}
        for i, (name, start) in enumerate(columns):
            end = columns[i + 1][1] if i + 1 < len(columns) else None
            row[name] = line[start:end].strip() if end is not None else line[start:].strip()
        rows.append(row)
    return rows


def _is_true(value: str | None) -> bool:
    return (value or "").strip().lower() == "true"


def build_etcd_report(status_output: str, members_output: str, address: str) -> EtcdReport:
    """Combine ``etcd status`` and ``etcd members`` tables into one report."""
    status_rows = parse_table(status_output)
    if not status_rows:
        raise TalosError(f"etcd status returned no rows for {address}")
    status = status_rows[0]
    member_id = status.get("MEMBER", "")
    if not member_id:
        raise TalosError(f"etcd status for {address} has no member id")

    peers = []
    for row in parse_table(members_output):
        peer_id = row.get("ID", "")
        if not peer_id:
            continue
        peers.append(
            EtcdPeerView(
                member_id=peer_id,
                hostname=row.get("HOSTNAME") or peer_id,
                learner=_is_true(row.get("LEARNER")),
            )
        )

    hostname = next((p.hostname for p in peers if p.member_id == member_id), address)
    errors = tuple(e for e in [status.get("ERRORS", "")] if e)
    return EtcdReport(
        member_id=member_id,
        hostname=hostname,
        learner=_is_true(status.get("LEARNER")),
        errors=errors,
        peers=tuple(peers),
    )


class TalosctlNodeApi(NodeApi):
    """NodeApi implementation that shells out to talosctl."""

    def __init__(self, context: ClusterContext, timeout: float = 10.0, binary: str = TALOSCTL):
        super().__init__(context)
        self.timeout = timeout
        self.binary = binary

    def _base_args(self, address: str) -> list[str]:
        args = [self.binary]
        creds = self.context.credentials
        if creds.talosconfig:
            args += ["--talosconfig", str(creds.talosconfig)]
        if creds.talos_context:
            args += ["--context", creds.talos_context]
        # Dial the address itself so the answer comes from whoever holds it
        args += ["--endpoints", address, "--nodes", address]
        return args

    async def _run(self, address: str, *args: str) -> str:
        cmd = self._base_args(address) + list(args)
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE
            )
        except FileNotFoundError:
            logger.error("talosctl binary not found in PATH")
            raise TalosError(
                "talosctl is not installed or not in PATH",
                "Install talosctl from https://www.talos.dev/latest/talos-guides/install/talosctl/",
            )

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise TalosError(
                f"talosctl timed out after {self.timeout}s against {address}",
                f"Command: {' '.join(args)}",
            )

        if proc.returncode != 0:
            message = stderr.decode(errors="replace").strip()
            logger.debug(f"talosctl {' '.join(args)} failed on {address}: {message}")
            raise TalosError(f"talosctl failed against {address}", message or None)

        return stdout.decode(errors="replace")

    async def _get(self, address: str, resource: str) -> list[dict]:
        return parse_resources(await self._run(address, "get", resource, "-o", "yaml"))

    async def probe(self, address: str) -> NodeIdentity:
        sysinfo, hostname, machinetype, addresses = await asyncio.gather(
            self._get(address, "systeminformation"),
            self._get(address, "hostname"),
            self._get(address, "machinetype"),
            self._get(address, "addresses"),
        )

        if not sysinfo or not (_spec(sysinfo[0]) or {}).get("uuid"):
            raise TalosError(f"{address} did not report a machine identity")
        if not hostname or not (_spec(hostname[0]) or {}).get("hostname"):
            raise TalosError(f"{address} did not report a hostname")
        if not machinetype:
            raise TalosError(f"{address} did not report a machine type")

        try:
            role = Role.from_machine_type(str(_spec(machinetype[0])))
        except ValueError as e:
            raise TalosError(f"{address} reported an unusable machine type", str(e))

        own, shared = parse_addresses(addresses)
        return NodeIdentity(
            identity=str(_spec(sysinfo[0])["uuid"]),
            hostname=str(_spec(hostname[0])["hostname"]),
            role=role,
            addresses=tuple(own),
            shared_addresses=tuple(shared),
        )

    async def etcd_status(self, address: str) -> EtcdReport:
        status, members = await asyncio.gather(
            self._run(address, "etcd", "status"),
            self._run(address, "etcd", "members"),
        )
        return build_etcd_report(status, members, address)

    async def reboot(self, address: str) -> None:
        logger.info(f"Rebooting node at {address}")
        await self._run(address, "reboot", "--wait=false")
