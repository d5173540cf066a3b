# src/talvirt/config/loader.py

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from pydantic import ValidationError

from talvirt.errors import ConfigError
from .models import ClusterConfig

# environment variable -> dotted path inside the config
ENV_OVERRIDES = {
    "CONTROLPLANE_IP": "controlplane.address",
    "WORKER_IP": "worker.address",
    "GPU_PCI": "worker.gpu_pci",
    "PERSISTENT_MOUNT_PATH": "storage.persistent_mount_path",
    "PERSISTENT_HOST_PATH": "storage.persistent_host_path",
    # talvirt writes to these paths; the ambient TALOSCONFIG/KUBECONFIG belong to the user
    "TALVIRT_TALOSCONFIG": "paths.talosconfig",
    "TALVIRT_KUBECONFIG": "paths.kubeconfig",
}


def _deep_merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        if isinstance(v, Mapping) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _set_dotted(data: Dict[str, Any], dotted: str, value: Any) -> None:
    *parents, leaf = dotted.split(".")
    node = data
    for p in parents:
        node = node.setdefault(p, {})
    node[leaf] = value


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    environ = os.environ if environ is None else environ
    for var, dotted in ENV_OVERRIDES.items():
        value = environ.get(var)
        if value:
            _set_dotted(data, dotted, value)
    return data


def load_config(
    path: Optional[str | Path] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> ClusterConfig:
    """
    Build the cluster config: built-in defaults, then the YAML file (with
    ${VAR} expansion), then the well-known environment variables.
    """
    data: Dict[str, Any] = ClusterConfig().model_dump(mode="json")

    if path is not None:
        p = Path(path)
        if not p.exists():
            raise ConfigError(f"config file not found: {p}")

        # expand environment variables like ${WORKSPACE_ROOT}
        expanded = os.path.expandvars(p.read_text())
        try:
            raw = yaml.safe_load(expanded) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"invalid YAML in {p}: {e}") from e
        if not isinstance(raw, dict):
            raise ConfigError(f"{p}: top-level document must be a mapping")

        data = _deep_merge(data, raw)
        # relative project_dir is resolved against the config file location
        project_dir = Path(data.get("paths", {}).get("project_dir") or ".")
        if not project_dir.is_absolute():
            data.setdefault("paths", {})["project_dir"] = str((p.parent / project_dir).resolve())

    data = apply_env_overrides(data, environ)

    try:
        return ClusterConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid cluster config: {e}") from e
