# src/kubestrap/config/models.py

from pathlib import Path
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

from ..bootstrap.models import Host, Role

ASSETS_DIR = Path(__file__).resolve().parent.parent / "assets"


class RetrySettings(BaseModel):
    attempts: int = Field(3, ge=1)
    base_delay: float = Field(2.0, ge=0)
    max_delay: float = Field(30.0, ge=0)


class BootstrapSettings(BaseModel):
    """Cluster wide knobs. Defaults follow the upstream kubeadm + containerd + flannel setup."""

    cluster_name: str = "kubernetes"

    # Container runtime
    containerd_url: str = "https://github.com/containerd/containerd/releases/download/v1.5.7/containerd-1.5.7-linux-amd64.tar.gz"
    containerd_binaries: List[str] = Field(default_factory=lambda: [
        "containerd",
        "containerd-shim",
        "containerd-shim-runc-v1",
        "containerd-shim-runc-v2",
        "ctr",
    ])
    containerd_service_file: Path = ASSETS_DIR / "containerd.service"
    containerd_config_file: Path = ASSETS_DIR / "containerd-config.toml"
    cri_socket: str = "/run/containerd/containerd.sock"

    # Host OS
    kernel_modules: List[str] = Field(default_factory=lambda: [
        "br_netfilter", "ip_vs", "ip_vs_rr", "ip_vs_sh", "ip_vs_wrr", "overlay", "nf_conntrack",
    ])
    sysctl: Dict[str, str] = Field(default_factory=lambda: {
        "net.ipv4.ip_forward": "1",
        "net.bridge.bridge-nf-call-iptables": "1",
    })
    base_packages: List[str] = Field(default_factory=lambda: ["apt-transport-https", "gnupg2", "runc"])
    upgrade_system: bool = True

    # Kubernetes
    kubernetes_version: str = "v1.30"
    kubernetes_packages: List[str] = Field(default_factory=lambda: ["kubelet", "kubectl", "kubeadm"])
    pod_cidr: str = "172.16.0.0/20"
    advertise_interface: str = "ens4"
    external_dns_name: Optional[str] = None
    admin_kubeconfig: str = "/etc/kubernetes/admin.conf"
    cni_manifest: str = "https://raw.githubusercontent.com/flannel-io/flannel/master/Documentation/kube-flannel.yml"

    # SSH defaults (per host values win)
    ssh_username: str = "ubuntu"
    ssh_port: int = 22
    ssh_key: Optional[Path] = None

    # Orchestration
    retry: RetrySettings = RetrySettings()
    concurrency: Optional[int] = Field(None, ge=1)
    role_timeout: Optional[float] = Field(3600.0, gt=0)
    step_timeout: Optional[float] = Field(900.0, gt=0)
    state_file: Optional[Path] = None
    log_dir: Optional[Path] = None

    @property
    def kubernetes_repo_key_url(self) -> str:
        return f"https://pkgs.k8s.io/core:/stable:/{self.kubernetes_version}/deb/Release.key"

    @property
    def kubernetes_apt_source(self) -> str:
        return (
            "deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] "
            f"https://pkgs.k8s.io/core:/stable:/{self.kubernetes_version}/deb/ /"
        )

    def state_path(self) -> Path:
        if self.state_file:
            return Path(self.state_file).expanduser()
        return Path.home() / ".kubestrap" / "state" / f"{self.cluster_name}.json"


class InventoryHost(BaseModel):
    address: str
    role: Literal["control-plane", "worker"]
    name: Optional[str] = None
    username: Optional[str] = None
    port: Optional[int] = None
    pkey_path: Optional[Path] = None
    password: Optional[str] = Field(None, repr=False)

    def to_host(self, settings: BootstrapSettings) -> Host:
        return Host(
            name=self.name or self.address,
            address=self.address,
            role=Role(self.role),
            username=self.username or settings.ssh_username,
            port=self.port or settings.ssh_port,
            pkey_path=self.pkey_path or settings.ssh_key,
            password=self.password,
        )


class Inventory(BaseModel):
    hosts: List[InventoryHost]
    settings: BootstrapSettings = BootstrapSettings()

    @model_validator(mode="after")
    def _check_hosts(self):
        if not any(h.role == "control-plane" for h in self.hosts):
            raise ValueError("inventory needs at least one control-plane host")
        names = [h.name or h.address for h in self.hosts]
        dupes = sorted({n for n in names if names.count(n) > 1})
        if dupes:
            raise ValueError(f"duplicate host names in inventory: {dupes}")
        return self

    def hosts_for(self, role: Role) -> List[Host]:
        return [h.to_host(self.settings) for h in self.hosts if h.role == role.value]

    def all_hosts(self) -> List[Host]:
        return [h.to_host(self.settings) for h in self.hosts]
