from pathlib import Path
import textwrap

import pytest

from talvirt.config.loader import apply_env_overrides, load_config
from talvirt.config.models import ClusterConfig, PollSettings
from talvirt.errors import ConfigError


def test_defaults_without_file():
    cfg = load_config(environ={})
    assert cfg.name == "acemagic-talos"
    assert cfg.controlplane.ip == "192.168.122.76"
    assert cfg.worker.ip == "192.168.122.77"
    assert cfg.talos.talos_version == "v1.10.8"
    assert cfg.talos.kubernetes_version == "1.34.2"
    assert cfg.endpoint == "https://192.168.122.76:6443"
    assert cfg.bootstrap.etcd.max_attempts == 120
    assert cfg.bootstrap.strict_join is False
    assert cfg.storage.persistent_mount_path == "/var/lib/persistent"


def test_load_config_merges_file_over_defaults(tmp_path: Path):
    cfg_text = textwrap.dedent("""
        name: lab
        worker:
          address: 10.0.0.21
          gpu_pci: "0000:03:00.0"
        bootstrap:
          etcd:
            max_attempts: 10
            interval_seconds: 1
    """)
    f = tmp_path / "cluster.yaml"
    f.write_text(cfg_text)

    cfg = load_config(f, environ={})

    assert cfg.name == "lab"
    assert cfg.worker.ip == "10.0.0.21"
    # untouched sibling keys keep their defaults
    assert cfg.worker.name == "talos-worker"
    assert cfg.worker.vcpus == 6
    assert cfg.worker.gpu_pci == "0000:03:00.0"
    assert cfg.bootstrap.etcd == PollSettings(max_attempts=10, interval_seconds=1)
    assert cfg.bootstrap.kube_api.max_attempts == 60
    assert cfg.paths.project_dir == tmp_path.resolve()


def test_relative_project_dir_resolved_against_config(tmp_path: Path):
    (tmp_path / "conf").mkdir()
    f = tmp_path / "conf" / "cluster.yaml"
    f.write_text("paths:\n  project_dir: ..\n")
    cfg = load_config(f, environ={})
    assert cfg.paths.project_dir == tmp_path.resolve()
    assert cfg.paths.talosconfig_path == tmp_path.resolve() / ".talosconfig"


def test_env_overrides_win(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text("controlplane:\n  address: 10.0.0.1\n")
    env = {
        "CONTROLPLANE_IP": "10.0.0.50",
        "PERSISTENT_MOUNT_PATH": "/mnt/data",
        "TALVIRT_KUBECONFIG": "/tmp/kc",
    }
    cfg = load_config(f, environ=env)
    assert cfg.controlplane.ip == "10.0.0.50"
    assert cfg.storage.persistent_mount_path == "/mnt/data"
    assert cfg.paths.kubeconfig_path == Path("/tmp/kc")


def test_empty_env_values_ignored():
    data = apply_env_overrides({"worker": {"address": "1.2.3.4"}}, {"WORKER_IP": ""})
    assert data["worker"]["address"] == "1.2.3.4"


def test_env_vars_expanded_in_file(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("LAB_NAME", "from-env")
    f = tmp_path / "cluster.yaml"
    f.write_text("name: ${LAB_NAME}\n")
    assert load_config(f, environ={}).name == "from-env"


def test_missing_file(tmp_path: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(tmp_path / "nope.yaml", environ={})


def test_invalid_yaml(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text("name: [unclosed\n")
    with pytest.raises(ConfigError, match="invalid YAML"):
        load_config(f, environ={})


def test_non_mapping_document(tmp_path: Path):
    f = tmp_path / "cluster.yaml"
    f.write_text("- a\n- b\n")
    with pytest.raises(ConfigError, match="mapping"):
        load_config(f, environ={})


@pytest.mark.parametrize(
    "text",
    [
        "worker:\n  address: not-an-ip\n",
        "bootstrap:\n  etcd:\n    max_attempts: 0\n",
        "unknown_key: 1\n",
        "name: '  '\n",
    ],
)
def test_schema_errors_become_config_error(tmp_path: Path, text):
    f = tmp_path / "cluster.yaml"
    f.write_text(text)
    with pytest.raises(ConfigError, match="invalid cluster config"):
        load_config(f, environ={})


def test_config_is_frozen():
    cfg = ClusterConfig()
    with pytest.raises(Exception):
        cfg.name = "other"


def test_exporter_lookup():
    cfg = ClusterConfig()
    node = cfg.exporter("node_exporter")
    assert node.port == 9100
    assert node.url.endswith("node_exporter-1.10.2.linux-amd64.tar.gz")
    assert cfg.exporter("process_exporter").unit_name == "process_exporter.service"
    with pytest.raises(KeyError):
        cfg.exporter("nope")


def test_ambient_credentials_do_not_become_write_targets(tmp_path: Path):
    home = tmp_path / "home"
    env = {
        "KUBECONFIG": str(home / ".kube" / "config"),
        "TALOSCONFIG": str(home / ".talos" / "config"),
    }
    cfg = load_config(None, environ=env)
    assert cfg.paths.kubeconfig_path == cfg.paths.project_dir / "kubeconfig"
    assert cfg.paths.talosconfig_path == cfg.paths.project_dir / ".talosconfig"
