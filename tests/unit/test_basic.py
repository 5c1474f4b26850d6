"""Basic tests to verify project setup."""


def test_import_node_pilot():
    """Test that node_pilot package can be imported."""
    import node_pilot

    assert node_pilot.__version__ == "0.1.0"


def test_import_cli():
    """Test that CLI module can be imported."""
    from node_pilot import cli

    assert cli.app is not None


def test_import_models():
    """Test that models module exposes the public types."""
    from node_pilot import models

    assert models.Member is not None
    assert "OperationPlan" in models.__all__


def test_import_adapters():
    """Test that the talosctl and Kubernetes adapters can be imported."""
    from node_pilot import kube, talosctl

    assert talosctl.TalosctlNodeApi is not None
    assert kube.KubernetesWorkloadApi is not None
