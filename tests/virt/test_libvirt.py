from pathlib import Path

import pytest

from talvirt.config.models import ClusterConfig
from talvirt.errors import NonZeroExit
from talvirt.virt.libvirt import Virsh, virt_install


def _arg_after(args, flag):
    return [args[i + 1] for i, a in enumerate(args) if a == flag]


def test_virt_install_control_plane():
    cp = ClusterConfig().controlplane
    inv = virt_install(cp, iso_path=Path("/tmp/talos.iso"), pool_path=Path("/pool"), bridge="br0")

    args = inv.args
    assert inv.program == "virt-install"
    assert _arg_after(args, "--name") == ["talos-controlplane"]
    assert _arg_after(args, "--vcpus") == ["2"]
    assert _arg_after(args, "--memory") == ["5120"]
    assert _arg_after(args, "--disk") == ["path=/pool/talos-controlplane.qcow2,size=10,format=qcow2,bus=virtio"]
    assert _arg_after(args, "--network") == ["bridge=br0,mac=52:54:00:12:34:56,model=virtio"]
    assert "--hostdev" not in args
    assert args[-1] == "--noautoconsole"


def test_virt_install_worker_with_gpu_and_persistent_disk():
    worker = ClusterConfig().worker.model_copy(update={"gpu_pci": "0000:03:00.0", "persistent_disk_gb": 50})
    inv = virt_install(
        worker,
        iso_path=Path("/tmp/talos.iso"),
        pool_path=Path("/pool"),
        bridge="br0",
        persistent_host_path=Path("/data"),
        uri="qemu:///system",
    )
    args = inv.args
    assert args[:2] == ("--connect", "qemu:///system")
    assert _arg_after(args, "--hostdev") == ["0000:03:00.0"]
    disks = _arg_after(args, "--disk")
    assert len(disks) == 2
    assert disks[1] == "path=/data/talos-worker-persistent.qcow2,size=50,format=qcow2,bus=virtio"


def test_virsh_builders_with_uri():
    v = Virsh("qemu:///system")
    assert v.undefine("vm").argv == ["virsh", "-c", "qemu:///system", "undefine", "vm", "--remove-all-storage"]
    assert Virsh().domifaddr("vm").args == ("domifaddr", "vm", "--source", "lease")


def test_domain_names(fake_runner):
    runner = fake_runner({"list --all --name": (0, "talos-controlplane\ntalos-worker\n\n")})
    assert Virsh().domain_names(runner) == ["talos-controlplane", "talos-worker"]


def test_domain_names_failure(fake_runner):
    runner = fake_runner({"list": (1, "")})
    with pytest.raises(NonZeroExit):
        Virsh().domain_names(runner)


def test_state_of(fake_runner):
    assert Virsh().state_of(fake_runner({"domstate": (0, "running\n")}), "vm") == "running"
    assert Virsh().state_of(fake_runner({"domstate": (1, "")}), "vm") == "unknown"


def test_export_xml(fake_runner, tmp_path: Path):
    runner = fake_runner({"dumpxml": (0, "<domain/>\n")})
    dest = tmp_path / "vms" / "controlplane.xml"
    assert Virsh().export_xml(runner, "vm", dest) is True
    assert dest.read_text() == "<domain/>\n"

    missing = tmp_path / "vms" / "worker.xml"
    assert Virsh().export_xml(fake_runner({"dumpxml": (1, "")}), "vm", missing) is False
    assert not missing.exists()
