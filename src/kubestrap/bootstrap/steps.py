# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/kubestrap/bootstrap/steps.py
from __future__ import annotations

import re
import shlex
from typing import List

from .errors import PermanentActionError
from .models import ConvergenceRecord, Host, JoinCredential, Role, Step, StepContext
from .plan import HostPlan
from ..config.models import BootstrapSettings

CONTROL_PLANE = frozenset({Role.CONTROL_PLANE})
WORKER = frozenset({Role.WORKER})

JOIN_CREDENTIAL = "join_credential"
KUBELET_CONF = "/etc/kubernetes/kubelet.conf"
KEYRING = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"
CONTAINERD_ARCHIVE = "/opt/containerd.tar.gz"

# kubeadm join flags a worker is allowed to receive from the control plane
_JOIN_FLAGS = {
    "--token",
    "--discovery-token-ca-cert-hash",
    "--cri-socket",
    "--control-plane",
    "--certificate-key",
}
_ENDPOINT = re.compile(r"^[A-Za-z0-9.\-\[\]:]+:\d{1,5}$")
_FLAG_VALUE = re.compile(r"^[A-Za-z0-9._:/\-]+$")


def validated_join_argv(join_command: str, cri_socket: str | None = None) -> List[str]:
    """
    Turn the control plane's join command into a bounded argv: `kubeadm join
    <endpoint>` plus whitelisted flags only. Anything else is refused.
    """
    try:
        argv = shlex.split(join_command)
    except ValueError as exc:
        raise PermanentActionError(f"join command cannot be parsed: {exc}") from exc

    if argv[:2] != ["kubeadm", "join"] or len(argv) < 3:
        raise PermanentActionError("join command must start with 'kubeadm join <endpoint>'")
    if not _ENDPOINT.match(argv[2]):
        raise PermanentActionError("join command endpoint is not host:port")

    out = argv[:3]
    seen = set()
    i = 3
    while i < len(argv):
        arg = argv[i]
        if "=" in arg:
            flag, value = arg.split("=", 1)
        else:
            flag, value = arg, None
        if flag not in _JOIN_FLAGS:
            raise PermanentActionError(f"join command carries unexpected argument '{flag}'")
        if flag != "--control-plane" and value is None:
            if i + 1 >= len(argv):
                raise PermanentActionError(f"join flag '{flag}' has no value")
            value = argv[i + 1]
            i += 1
        if value is not None and not _FLAG_VALUE.match(value):
            raise PermanentActionError(f"join flag '{flag}' has an invalid value")
        out.append(flag if value is None else f"{flag}={value}")
        seen.add(flag)
        i += 1

    if "--token" not in seen or "--discovery-token-ca-cert-hash" not in seen:
        raise PermanentActionError("join command is missing --token or --discovery-token-ca-cert-hash")
    if cri_socket and "--cri-socket" not in seen:
        out.append(f"--cri-socket=unix://{cri_socket}")
    return out


class ClusterSteps:
    """
    The kubeadm cluster build as idempotent steps:
      - host OS prep         (group/user, kernel modules, packages, sysctl, swap)
      - container runtime    (containerd archive, systemd unit, config)
      - kubernetes binaries  (apt repo + kubelet/kubeadm/kubectl)
      - control plane        (kubeadm init, join token)
      - worker               (kubeadm join)
      - overlay network      (applied once by the orchestrator)
    Every command is guarded so running it again changes nothing.
    """

    def __init__(self, settings: BootstrapSettings):
        self.settings = settings

    # ------------------ host OS ------------------

    def create_group(self, ctx: StepContext):
        ctx.run("getent group kubernetes >/dev/null || groupadd kubernetes")

    def create_user(self, ctx: StepContext):
        ctx.run("id -u kubernetes >/dev/null 2>&1 || useradd -s /bin/false -g kubernetes kubernetes")

    def load_kernel_modules(self, ctx: StepContext):
        mods = self.settings.kernel_modules
        content = " ".join(shlex.quote(m) for m in mods)
        ctx.run(
            f"printf '%s\\n' {content} > /etc/modules-load.d/kubernetes.conf"
            f" && modprobe -a {content}"
        )

    def upgrade_system(self, ctx: StepContext):
        ctx.run(
            "export DEBIAN_FRONTEND=noninteractive"
            " && apt-get update -y"
            " && apt-get -y -o Dpkg::Options::=--force-confold dist-upgrade"
        )

    def install_base_packages(self, ctx: StepContext):
        pkgs = " ".join(shlex.quote(p) for p in self.settings.base_packages)
        ctx.run(f"DEBIAN_FRONTEND=noninteractive apt-get install -y {pkgs}")

    def configure_sysctl(self, ctx: StepContext):
        lines = " ".join(shlex.quote(f"{k}={v}") for k, v in sorted(self.settings.sysctl.items()))
        ctx.run(f"printf '%s\\n' {lines} > /etc/sysctl.d/99-kubernetes.conf && sysctl --system >/dev/null")

    def disable_swap(self, ctx: StepContext):
        ctx.run(r"swapoff -a && sed -i -E '/^[^#].*\sswap\s/ s/^/#/' /etc/fstab")

    # ------------------ container runtime ------------------

    def download_containerd(self, ctx: StepContext):
        present = ctx.run(
            f"test -x /usr/local/bin/containerd || tar -tzf {CONTAINERD_ARCHIVE} >/dev/null 2>&1",
            check=False,
        )
        if present.ok:
            return
        # a truncated archive from an interrupted transfer must not count as present
        ctx.run(f"rm -f {CONTAINERD_ARCHIVE}")
        ctx.fetch(self.settings.containerd_url, CONTAINERD_ARCHIVE)

    def install_containerd(self, ctx: StepContext):
        bins = " ".join(shlex.quote(b) for b in self.settings.containerd_binaries)
        ctx.run(
            f"if [ -s {CONTAINERD_ARCHIVE} ]; then"
            f" tar -xzf {CONTAINERD_ARCHIVE} -C /opt"
            f" && for b in {bins}; do install -m 0755 /opt/bin/$b /usr/local/bin/$b; done"
            f" && rm -rf {CONTAINERD_ARCHIVE} /opt/bin;"
            " fi; test -x /usr/local/bin/containerd"
        )

    def install_containerd_service(self, ctx: StepContext):
        ctx.copy(self.settings.containerd_service_file, "/usr/lib/systemd/system/containerd.service", mode=0o644)
        ctx.run("systemctl daemon-reload")

    def configure_containerd(self, ctx: StepContext):
        ctx.copy(self.settings.containerd_config_file, "/etc/containerd/config.toml", mode=0o644)

    def start_containerd(self, ctx: StepContext):
        ctx.run("systemctl enable --now containerd && systemctl is-active --quiet containerd")

    # ------------------ kubernetes binaries ------------------

    def add_kubernetes_repo(self, ctx: StepContext):
        s = self.settings
        ctx.run(
            "install -d -m 0755 /etc/apt/keyrings"
            f" && (test -s {KEYRING} || curl -fsSL {shlex.quote(s.kubernetes_repo_key_url)} | gpg --dearmor -o {KEYRING})"
            f" && echo {shlex.quote(s.kubernetes_apt_source)} > /etc/apt/sources.list.d/kubernetes.list"
        )

    def install_kubernetes_packages(self, ctx: StepContext):
        pkgs = " ".join(shlex.quote(p) for p in self.settings.kubernetes_packages)
        ctx.run(
            "export DEBIAN_FRONTEND=noninteractive"
            " && apt-get update -y"
            f" && apt-get install -y {pkgs}"
            f" && apt-mark hold {pkgs}"
        )

    # ------------------ control plane ------------------

    def _advertise_address(self, host: Host) -> str:
        iface = self.settings.advertise_interface
        if not iface:
            return shlex.quote(host.address)
        return f"\"$(ip -4 -o addr show {shlex.quote(iface)} | awk '{{print $4}}' | cut -d/ -f1 | head -n1)\""

    def kubeadm_init(self, ctx: StepContext):
        s = self.settings
        parts = [
            "kubeadm init",
            f"--apiserver-advertise-address {self._advertise_address(ctx.host)}",
            f"--pod-network-cidr {shlex.quote(s.pod_cidr)}",
            f"--cri-socket unix://{s.cri_socket}",
        ]
        if s.external_dns_name:
            parts.append(f"--apiserver-cert-extra-sans {shlex.quote(s.external_dns_name)}")
        # admin.conf exists before the control plane is healthy, only a ready API server counts
        ready = f"kubectl get --raw=/readyz --kubeconfig {s.admin_kubeconfig} >/dev/null 2>&1"
        ctx.run(f"{ready} || {' '.join(parts)}")

    def create_join_token(self, ctx: StepContext):
        return ctx.run(f"kubeadm token create --print-join-command --kubeconfig {self.settings.admin_kubeconfig}")

    def extract_join_credential(self, result) -> JoinCredential:
        return JoinCredential.parse(result.stdout)

    # ------------------ worker ------------------

    def join_cluster(self, ctx: StepContext):
        cred = ctx.params.get(JOIN_CREDENTIAL)
        if not isinstance(cred, JoinCredential) or not cred.join_command:
            raise PermanentActionError("no join credential was handed to this worker")
        argv = validated_join_argv(cred.join_command, self.settings.cri_socket)
        ctx.run(f"test -f {KUBELET_CONF} || {shlex.join(argv)}", secret=True)

    # ------------------ overlay ------------------

    def apply_overlay_network(self, ctx: StepContext):
        s = self.settings
        ctx.run(f"kubectl --kubeconfig {s.admin_kubeconfig} apply -f {shlex.quote(s.cni_manifest)}")

    # ------------------ plan ------------------

    def steps(self) -> List[Step]:
        s = self.settings

        def wants_upgrade(host: Host, record: ConvergenceRecord) -> bool:
            return s.upgrade_system

        return [
            Step("create-group", "Create kubernetes group", self.create_group),
            Step("create-user", "Create kubernetes system user", self.create_user, after=("create-group",)),
            Step("load-kernel-modules", "Load and persist kernel modules", self.load_kernel_modules),
            Step("upgrade-system", "Update package index and dist-upgrade", self.upgrade_system, applicable=wants_upgrade),
            Step("install-base-packages", "Install base packages", self.install_base_packages),
            Step("download-containerd", "Download containerd archive", self.download_containerd),
            Step("install-containerd", "Install containerd binaries", self.install_containerd,
                 after=("download-containerd",)),
            Step("install-containerd-service", "Install containerd systemd unit", self.install_containerd_service,
                 after=("install-containerd",)),
            Step("configure-containerd", "Write containerd config", self.configure_containerd,
                 after=("install-containerd",)),
            Step("start-containerd", "Enable and start containerd", self.start_containerd,
                 after=("install-containerd-service", "configure-containerd", "load-kernel-modules")),
            Step("add-kubernetes-repo", "Add Kubernetes apt repository", self.add_kubernetes_repo,
                 after=("install-base-packages",)),
            Step("install-kubernetes-packages", "Install kubelet, kubeadm and kubectl", self.install_kubernetes_packages,
                 after=("add-kubernetes-repo",)),
            Step("configure-sysctl", "Enable ip_forward and bridge-nf-call-iptables", self.configure_sysctl,
                 after=("load-kernel-modules",)),
            Step("disable-swap", "Disable swap", self.disable_swap),
            Step("kubeadm-init", "Initialize the control plane", self.kubeadm_init, roles=CONTROL_PLANE,
                 after=("start-containerd", "install-kubernetes-packages", "configure-sysctl", "disable-swap")),
            Step("create-join-token", "Create a worker join token", self.create_join_token, roles=CONTROL_PLANE,
                 extract=self.extract_join_credential, output=JOIN_CREDENTIAL, after=("kubeadm-init",),
                 volatile=True),
            Step("join-cluster", "Join the cluster", self.join_cluster, roles=WORKER,
                 after=("start-containerd", "install-kubernetes-packages", "configure-sysctl", "disable-swap")),
        ]

    def plan(self) -> HostPlan:
        return HostPlan(self.steps())

    def overlay_step(self) -> Step:
        return Step(
            "apply-overlay-network",
            "Apply the pod network overlay manifest",
            self.apply_overlay_network,
            roles=CONTROL_PLANE,
        )


def default_plan(settings: BootstrapSettings) -> HostPlan:
    return ClusterSteps(settings).plan()


def overlay_step(settings: BootstrapSettings) -> Step:
    return ClusterSteps(settings).overlay_step()
