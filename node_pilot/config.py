"""Configuration loading for node pilot.

Cluster contexts come from a talosconfig file (``contexts.<name>.endpoints``
and ``contexts.<name>.nodes``); tool settings come from an optional
node-pilot YAML file. Both are read with ruamel.yaml and never written.
"""

import os
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError, field_validator
from ruamel.yaml import YAML

from node_pilot.exceptions import ConfigurationError
from node_pilot.logging_config import get_logger
from node_pilot.models.context import ClusterContext, ContextCredentials, Endpoint, NodeHint

logger = get_logger(__name__)

DEFAULT_TALOSCONFIG = Path("~/.talos/config")
DEFAULT_SETTINGS = Path("~/.node-pilot/config.yml")
DEFAULT_AUDIT_LOG = Path("~/.node-pilot/audit.log")


class DrainOptions(BaseModel):
    """Options for evicting pods from a node."""

    per_pod_timeout: float = 30.0
    retry_interval: float = 2.0
    grace_period: int | None = None
    force_delete_unmanaged: bool = False
    ignore_daemonsets: bool = True
    delete_emptydir_data: bool = True


class OperationSettings(BaseModel):
    """Timeouts and limits for probes and rolling operations (seconds)."""

    probe_timeout: float = 10.0
    probe_concurrency: int = 8
    health_timeout: float = 10.0
    cordon_timeout: float = 30.0
    drain_timeout: float = 600.0
    reboot_timeout: float = 300.0
    disconnect_timeout: float = 60.0
    poll_interval: float = 5.0
    precheck_timeout: float = 30.0
    drain: DrainOptions = Field(default_factory=DrainOptions)

    @field_validator("probe_concurrency")
    @classmethod
    def validate_concurrency(cls, v: int) -> int:
        if v < 1:
            raise ValueError("probe_concurrency must be at least 1")
        return v

    @field_validator(
        "probe_timeout",
        "health_timeout",
        "cordon_timeout",
        "drain_timeout",
        "reboot_timeout",
        "disconnect_timeout",
        "precheck_timeout",
    )
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("timeouts must be positive")
        return v


class NodePilotConfig(BaseModel):
    """Everything the core needs from configuration."""

    contexts: list[ClusterContext]
    default_context: str | None = None
    settings: OperationSettings = Field(default_factory=OperationSettings)
    audit_log: Path = DEFAULT_AUDIT_LOG

    def context(self, name: str | None = None) -> ClusterContext:
        """Return the named context, or the default one."""
        name = name or self.default_context
        if name is None:
            if len(self.contexts) == 1:
                return self.contexts[0]
            raise ConfigurationError(
                "No context selected",
                f"Choose one of: {', '.join(c.name for c in self.contexts)}",
            )
        for ctx in self.contexts:
            if ctx.name == name:
                return ctx
        raise ConfigurationError(
            f"Context '{name}' not found",
            f"Available contexts: {', '.join(c.name for c in self.contexts) or 'none'}",
        )


class ConfigLoader:
    """Reads talosconfig and node-pilot settings files."""

    def __init__(self, talosconfig_path: str | Path | None = None, settings_path: str | Path | None = None):
        """Initialize the loader.

        Args:
            talosconfig_path: talosconfig file; defaults to $TALOSCONFIG or ~/.talos/config
            settings_path: node-pilot settings file; optional
        """
        if talosconfig_path is None:
            talosconfig_path = os.environ.get("TALOSCONFIG", str(DEFAULT_TALOSCONFIG))
        self.talosconfig_path = Path(talosconfig_path).expanduser()
        self.settings_path = Path(settings_path).expanduser() if settings_path else None
        self.yaml = YAML()

    def _read(self, path: Path, what: str) -> dict:
        logger.debug(f"Reading {what}: {path}")

        if not path.exists():
            logger.error(f"{what} not found: {path}")
            raise ConfigurationError(
                f"{what} not found: {path}",
                f"Expected location: {path.absolute()}",
            )

        try:
            with open(path) as f:
                data = self.yaml.load(f)
        except Exception as e:
            logger.error(f"Failed to parse {what}: {e}", exc_info=True)
            raise ConfigurationError(
                f"Failed to parse {what}: {e}",
                f"The file may have invalid YAML syntax. Check the file at: {path.absolute()}",
            )

        if data is None:
            raise ConfigurationError(f"{what} is empty: {path}")
        if not isinstance(data, dict):
            raise ConfigurationError(f"{what} must be a mapping: {path}")
        return data

    def read_settings(self) -> dict:
        """Read the node-pilot settings file, or an empty mapping if none was given."""
        if self.settings_path is None:
            return {}
        return self._read(self.settings_path, "Settings file")

    def load_contexts(self, kubeconfigs: dict[str, str] | None = None) -> tuple[list[ClusterContext], str | None]:
        """Parse every context of the talosconfig.

        Returns:
            The contexts in file order and the talosconfig's current context name

        Raises:
            ConfigurationError: If the file is missing or a context is invalid
        """
        data = self._read(self.talosconfig_path, "talosconfig")
        kubeconfigs = kubeconfigs or {}

        contexts_data = data.get("contexts")
        if not isinstance(contexts_data, dict) or not contexts_data:
            raise ConfigurationError(
                "talosconfig defines no contexts",
                "Expected a 'contexts' mapping with at least one entry",
            )

        contexts = []
        for name, ctx in contexts_data.items():
            if not isinstance(ctx, dict):
                raise ConfigurationError(f"Context '{name}' must be a mapping")
            kubeconfig = kubeconfigs.get(name)
            try:
                contexts.append(
                    ClusterContext(
                        name=str(name),
                        endpoints=tuple(Endpoint(address=str(a)) for a in ctx.get("endpoints") or []),
                        node_hints=tuple(NodeHint(address=str(a)) for a in ctx.get("nodes") or []),
                        credentials=ContextCredentials(
                            talosconfig=self.talosconfig_path,
                            talos_context=str(name),
                            kubeconfig=Path(kubeconfig).expanduser() if kubeconfig else None,
                        ),
                    )
                )
            except ValidationError as e:
                problems = "; ".join(
                    f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
                )
                raise ConfigurationError(f"Context '{name}' is invalid", problems)
            logger.debug(
                f"Loaded context '{name}' with {len(contexts[-1].endpoints)} endpoints "
                f"and {len(contexts[-1].node_hints)} node hints"
            )

        current = data.get("context")
        return contexts, str(current) if current else None

    def load(self) -> NodePilotConfig:
        """Load contexts and settings into one validated config."""
        raw = self.read_settings()
        contexts, current = self.load_contexts(raw.get("kubeconfigs") or {})

        selected = raw.get("contexts")
        if selected:
            known = {c.name for c in contexts}
            missing = [name for name in selected if name not in known]
            if missing:
                raise ConfigurationError(
                    f"Settings select unknown contexts: {', '.join(missing)}",
                    f"Contexts in {self.talosconfig_path}: {', '.join(sorted(known))}",
                )
            contexts = [c for c in contexts if c.name in selected]

        try:
            settings = OperationSettings(**dict(raw.get("settings") or {}))
        except ValidationError as e:
            raise ConfigurationError("Invalid operation settings", str(e))

        audit_log = Path(raw.get("audit_log") or DEFAULT_AUDIT_LOG).expanduser()
        default = raw.get("default_context") or current
        if default and default not in {c.name for c in contexts}:
            default = None

        logger.info(f"Loaded {len(contexts)} cluster contexts")
        return NodePilotConfig(
            contexts=contexts, default_context=default, settings=settings, audit_log=audit_log
        )
