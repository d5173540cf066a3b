# src/talvirt/config/models.py

from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, IPvAnyAddress, field_validator


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class NodeSpec(_Frozen):
    """One libvirt domain / Talos node."""

    name: str                               # libvirt domain name
    role: Literal["controlplane", "worker"]
    address: IPvAnyAddress                  # expected (configured) address
    hostname: str
    vcpus: int = 2
    memory_mib: int = 5120
    disk_gb: int = 10
    mac: Optional[str] = None
    gpu_pci: Optional[str] = None           # worker GPU passthrough, e.g. 0000:03:00.0
    persistent_disk_gb: int = 0             # 0 = no second disk

    @property
    def ip(self) -> str:
        return str(self.address)


class TalosSettings(_Frozen):
    talos_version: str = "v1.10.8"
    kubernetes_version: str = "1.34.2"
    install_disk: str = "/dev/vda"
    interface: str = "eth0"
    dns_domain: str = "cluster.local"
    allow_scheduling_on_control_planes: bool = True

    @property
    def iso_url(self) -> str:
        return (
            "https://github.com/siderolabs/talos/releases/download/"
            f"{self.talos_version}/metal-amd64.iso"
        )


class NetworkSettings(_Frozen):
    bridge: str = "br0"
    physical_interface: str = "enp2s0"
    libvirt_uri: Optional[str] = None
    lease_source: Literal["lease", "agent", "arp"] = "lease"


class StorageSettings(_Frozen):
    pool_path: Path = Path("/var/lib/libvirt/images")
    iso_path: Path = Path("/tmp/talos-metal-amd64.iso")
    persistent_device: str = "/dev/vdb"
    persistent_mount_path: str = "/var/lib/persistent"
    persistent_host_path: Path = Path("/var/lib/libvirt/images")


class PollSettings(_Frozen):
    max_attempts: int = Field(default=60, ge=1)
    interval_seconds: float = Field(default=5.0, ge=0)


class BootstrapSettings(_Frozen):
    etcd: PollSettings = PollSettings(max_attempts=120, interval_seconds=5)
    kube_api: PollSettings = PollSettings(max_attempts=60, interval_seconds=5)
    worker_reachable: PollSettings = PollSettings(max_attempts=60, interval_seconds=5)
    nodes_joined: PollSettings = PollSettings(max_attempts=60, interval_seconds=5)
    apply_settle_seconds: float = 30
    reboot_settle_seconds: float = 5
    # worker-unreachable / nodes-not-joined become fatal when set
    strict_join: bool = False


class CiliumSettings(_Frozen):
    enabled: bool = True
    release: str = "cilium"
    chart: str = "cilium"
    repo: str = "https://helm.cilium.io/"
    namespace: str = "kube-system"
    version: Optional[str] = None
    values: Dict[str, str] = Field(
        default_factory=lambda: {
            "ipam.mode": "kubernetes",
            "kubeProxyReplacement": "true",
            "k8sServicePort": "6443",
            "gatewayAPI.enabled": "true",
            "l2announcements.enabled": "true",
            "externalIPs.enabled": "true",
            "devices[0]": "enp+",
            "devices[1]": "eth+",
            "securityContext.capabilities.ciliumAgent": (
                "{CHOWN,KILL,NET_ADMIN,NET_RAW,IPC_LOCK,SYS_ADMIN,SYS_RESOURCE,"
                "DAC_OVERRIDE,FOWNER,SETGID,SETUID}"
            ),
            "securityContext.capabilities.cleanCiliumState": "{NET_ADMIN,SYS_ADMIN,SYS_RESOURCE}",
            "cgroup.autoMount.enabled": "false",
            "cgroup.hostRoot": "/sys/fs/cgroup",
        }
    )


class ArgoCDSettings(_Frozen):
    enabled: bool = True
    namespace: str = "argocd"
    kustomize_dir: str = "bootstrap/argocd"
    app_manifests: List[str] = Field(
        default_factory=lambda: [
            "kubernetes/argocd-apps/argocd/app-of-apps.yaml",
            "kubernetes/argocd-apps/argocd/argocd-app.yaml",
        ]
    )
    rotate_admin_password: bool = True
    admin_password_env: str = "ARGOCD_ADMIN_PASSWORD"


class ExporterSpec(_Frozen):
    name: str                     # e.g. node_exporter
    binary: str                   # binary name inside the tarball
    version: str
    url_template: str             # formatted with version=
    port: int
    service_user: str = "nobody"
    args: List[str] = Field(default_factory=list)
    config_path: Optional[str] = None

    @property
    def url(self) -> str:
        return self.url_template.format(version=self.version)

    @property
    def unit_name(self) -> str:
        return f"{self.name}.service"


def _default_exporters() -> List[ExporterSpec]:
    return [
        ExporterSpec(
            name="node_exporter",
            binary="node_exporter",
            version="1.10.2",
            url_template=(
                "https://github.com/prometheus/node_exporter/releases/download/"
                "v{version}/node_exporter-{version}.linux-amd64.tar.gz"
            ),
            port=9100,
        ),
        ExporterSpec(
            name="process_exporter",
            binary="process-exporter",
            version="0.8.3",
            url_template=(
                "https://github.com/ncabatoff/process-exporter/releases/download/"
                "v{version}/process-exporter-{version}.linux-amd64.tar.gz"
            ),
            port=9256,
            service_user="root",
            args=["-config.path=/etc/process-exporter/config.yml"],
            config_path="/etc/process-exporter/config.yml",
        ),
    ]


class ProjectPaths(_Frozen):
    project_dir: Path = Path(".")
    talos_dir: Optional[Path] = None
    talosconfig: Optional[Path] = None
    kubeconfig: Optional[Path] = None
    vms_dir: Optional[Path] = None

    @property
    def talos(self) -> Path:
        return self.talos_dir or self.project_dir / "talos"

    @property
    def talosconfig_path(self) -> Path:
        return self.talosconfig or self.project_dir / ".talosconfig"

    @property
    def kubeconfig_path(self) -> Path:
        return self.kubeconfig or self.project_dir / "kubeconfig"

    @property
    def vms(self) -> Path:
        return self.vms_dir or self.project_dir / "vms"


class ClusterConfig(_Frozen):
    name: str = "acemagic-talos"
    paths: ProjectPaths = ProjectPaths()
    talos: TalosSettings = TalosSettings()
    network: NetworkSettings = NetworkSettings()
    storage: StorageSettings = StorageSettings()
    controlplane: NodeSpec = NodeSpec(
        name="talos-controlplane",
        role="controlplane",
        address="192.168.122.76",
        hostname="talos-controlplane",
        vcpus=2,
        memory_mib=5120,
        disk_gb=10,
        mac="52:54:00:12:34:56",
    )
    worker: NodeSpec = NodeSpec(
        name="talos-worker",
        role="worker",
        address="192.168.122.77",
        hostname="talos-worker",
        vcpus=6,
        memory_mib=10240,
        disk_gb=25,
        mac="52:54:00:12:34:57",
    )
    bootstrap: BootstrapSettings = BootstrapSettings()
    cilium: CiliumSettings = CiliumSettings()
    argocd: ArgoCDSettings = ArgoCDSettings()
    exporters: List[ExporterSpec] = Field(default_factory=_default_exporters)

    @field_validator("name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("cluster name must not be empty")
        return v

    @property
    def nodes(self) -> List[NodeSpec]:
        return [self.controlplane, self.worker]

    @property
    def endpoint(self) -> str:
        return f"https://{self.controlplane.ip}:6443"

    def exporter(self, name: str) -> ExporterSpec:
        for e in self.exporters:
            if e.name == name:
                return e
        raise KeyError(name)
