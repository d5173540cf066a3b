# src/talvirt/kube/kubectl.py

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import Dict, List, Optional

from talvirt.deploy.poller import ReadinessCheck, has_output_lines
from talvirt.execution.runner import CommandRunner, Invocation

log = logging.getLogger("talvirt")


class KubectlError(RuntimeError):
    pass


class Kubectl:
    """
    kubectl invocations against the cluster's kubeconfig.
    """

    def __init__(self, kubeconfig: Optional[Path] = None, binary: str = "kubectl"):
        self.kubeconfig = kubeconfig
        self.binary = binary

    def _inv(self, *args: str, timeout: Optional[float] = None) -> Invocation:
        env = {"KUBECONFIG": str(self.kubeconfig)} if self.kubeconfig else {}
        return Invocation(self.binary, tuple(args), env=env, timeout_seconds=timeout)

    def get_nodes(self) -> Invocation:
        return self._inv("get", "nodes", "--no-headers", timeout=30)

    def nodes_joined(self, minimum: int = 1) -> ReadinessCheck:
        """Ready once `kubectl get nodes --no-headers` lists at least `minimum` nodes."""
        return ReadinessCheck(
            self.get_nodes(),
            description=f"at least {minimum} node(s) registered",
            ready_when=has_output_lines(minimum),
        )

    def apply_kustomize(self, directory: str) -> Invocation:
        return self._inv("apply", "-k", directory, timeout=300)

    def apply_file(self, path: str) -> Invocation:
        return self._inv("apply", "-f", path, timeout=300)

    def get_secret_field(self, namespace: str, name: str, key: str) -> Invocation:
        return self._inv(
            "-n", namespace, "get", "secret", name,
            "-o", f"jsonpath={{.data.{key}}}",
            timeout=30,
        )

    def read_secret_field(self, runner: CommandRunner, namespace: str, name: str, key: str) -> str:
        result = runner.run(self.get_secret_field(namespace, name, key))
        if not result.ok or not result.stdout.strip():
            raise KubectlError(f"kubectl get secret {namespace}/{name} failed: {result.detail()}")
        return base64.b64decode(result.stdout.strip()).decode("utf-8", errors="replace")


class Helm:
    """
    A pragmatic wrapper around the `helm` CLI, reduced to upgrade --install.
    """

    def __init__(self, kubeconfig: Optional[Path] = None, binary: str = "helm"):
        self.kubeconfig = kubeconfig
        self.binary = binary

    def upgrade_install(
        self,
        release: str,
        chart: str,
        *,
        namespace: str,
        repo: Optional[str] = None,
        version: Optional[str] = None,
        values: Optional[Dict[str, str]] = None,
    ) -> Invocation:
        argv: List[str] = ["upgrade", "--install", release, chart, "--namespace", namespace]
        for key, value in (values or {}).items():
            argv += ["--set", f"{key}={value}"]
        if version:
            argv += ["--version", version]
        if repo:
            argv += ["--repo", repo]
        env = {"KUBECONFIG": str(self.kubeconfig)} if self.kubeconfig else {}
        return Invocation(self.binary, tuple(argv), env=env, timeout_seconds=900)


class ArgoCD:
    """argocd CLI reached through kubectl port-forwarding (--port-forward)."""

    def __init__(self, namespace: str = "argocd", kubeconfig: Optional[Path] = None, binary: str = "argocd"):
        self.namespace = namespace
        self.kubeconfig = kubeconfig
        self.binary = binary

    def _inv(self, *args: str, secrets: tuple = ()) -> Invocation:
        env = {"KUBECONFIG": str(self.kubeconfig)} if self.kubeconfig else {}
        pf = ("--port-forward", "--port-forward-namespace", self.namespace)
        return Invocation(self.binary, (*args, *pf), env=env, timeout_seconds=120, redact=secrets)

    def login(self, username: str, password: str) -> Invocation:
        return self._inv(
            "login", "--username", username, "--password", password, "--insecure",
            secrets=(password,),
        )

    def update_password(self, account: str, current: str, new: str) -> Invocation:
        return self._inv(
            "account", "update-password",
            "--account", account,
            "--current-password", current,
            "--new-password", new,
            secrets=(current, new),
        )
