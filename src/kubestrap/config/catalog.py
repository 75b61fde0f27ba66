# src/kubestrap/config/catalog.py

"""
Default kubeadm step catalog, used when a plan does not list its own steps.

Commands are jinja2 templates rendered with StrictUndefined. Available names:
  node, plan, cluster_name, control_plane, workers, outputs
"""

from __future__ import annotations

from typing import List

from .models import Role, StepDefinition

_ALL = [Role.CONTROL_PLANE, Role.WORKER]
_CP = [Role.CONTROL_PLANE]
_WORKER = [Role.WORKER]


PREPARE_NODE = (
    "sudo swapoff -a && sudo sed -i '/ swap / s/^/#/' /etc/fstab"
    " && printf 'overlay\\nbr_netfilter\\n' | sudo tee /etc/modules-load.d/k8s.conf >/dev/null"
    " && sudo modprobe overlay && sudo modprobe br_netfilter"
    " && printf 'net.bridge.bridge-nf-call-iptables = 1\\nnet.bridge.bridge-nf-call-ip6tables = 1\\nnet.ipv4.ip_forward = 1\\n'"
    " | sudo tee /etc/sysctl.d/k8s.conf >/dev/null && sudo sysctl --system"
)

INSTALL_RUNTIME = (
    "sudo apt-get update -y"
    " && sudo DEBIAN_FRONTEND=noninteractive apt-get install -y containerd apt-transport-https ca-certificates curl gpg"
    " && sudo mkdir -p /etc/containerd /etc/apt/keyrings"
    " && containerd config default | sed 's/SystemdCgroup = false/SystemdCgroup = true/' | sudo tee /etc/containerd/config.toml >/dev/null"
    " && sudo systemctl restart containerd"
    " && curl -fsSL https://pkgs.k8s.io/core:/stable:/v{{ plan.kubernetes_version }}/deb/Release.key"
    " | sudo gpg --batch --yes --dearmor -o /etc/apt/keyrings/kubernetes-apt-keyring.gpg"
    " && echo 'deb [signed-by=/etc/apt/keyrings/kubernetes-apt-keyring.gpg] https://pkgs.k8s.io/core:/stable:/v{{ plan.kubernetes_version }}/deb/ /'"
    " | sudo tee /etc/apt/sources.list.d/kubernetes.list >/dev/null"
    " && sudo apt-get update -y && sudo apt-get install -y kubelet kubeadm kubectl"
    " && sudo apt-mark hold kubelet kubeadm kubectl"
    " && echo 'KUBELET_EXTRA_ARGS=--node-ip={{ node.address }}' | sudo tee /etc/default/kubelet >/dev/null"
)

INIT_CONTROL_PLANE = (
    "sudo kubeadm init --apiserver-advertise-address={{ node.address }}"
    " --pod-network-cidr={{ plan.pod_cidr }} --node-name={{ node.id }}"
    " && mkdir -p $HOME/.kube && sudo cp -f /etc/kubernetes/admin.conf $HOME/.kube/config"
    " && sudo chown $(id -u):$(id -g) $HOME/.kube/config"
)

INSTALL_CNI = "kubectl apply -f {{ plan.cni_manifest }}"

PUBLISH_JOIN_COMMAND = "sudo kubeadm token create --print-join-command"

JOIN_CLUSTER = "sudo {{ outputs.join_command }} --node-name={{ node.id }}"

DRAIN_WORKERS = (
    "for n in {{ workers }}; do"
    " kubectl drain $n --ignore-daemonsets --delete-emptydir-data --force --timeout=60s;"
    " kubectl delete node $n --ignore-not-found;"
    " done"
)

RESET_NODE = "sudo kubeadm reset -f && sudo rm -rf /etc/cni/net.d $HOME/.kube"

EXPORT_KUBECONFIG = "sudo cat /etc/kubernetes/admin.conf"


def default_steps() -> List[StepDefinition]:
    return [
        StepDefinition(name="prepare-node", roles=_ALL, command=PREPARE_NODE),
        StepDefinition(
            name="install-runtime",
            roles=_ALL,
            command=INSTALL_RUNTIME,
            depends_on=["prepare-node"],
            timeout_seconds=1200,
        ),
        StepDefinition(
            name="init-control-plane",
            roles=_CP,
            command=INIT_CONTROL_PLANE,
            depends_on=["install-runtime"],
            idempotent=False,
        ),
        StepDefinition(
            name="install-cni",
            roles=_CP,
            command=INSTALL_CNI,
            depends_on=["init-control-plane"],
        ),
        StepDefinition(
            name="publish-join-command",
            roles=_CP,
            command=PUBLISH_JOIN_COMMAND,
            depends_on=["install-cni"],
            capture="join_command",
        ),
        StepDefinition(
            name="join-cluster",
            roles=_WORKER,
            command=JOIN_CLUSTER,
            depends_on=["install-runtime"],
            after=["control-plane/publish-join-command"],
            idempotent=False,
        ),
    ]


def default_teardown_steps() -> List[StepDefinition]:
    return [
        StepDefinition(name="drain-workers", roles=_CP, command=DRAIN_WORKERS, timeout_seconds=300),
        StepDefinition(name="reset-node", roles=_ALL, command=RESET_NODE, timeout_seconds=300),
    ]
