"""Tests for KernelState file access."""

import pytest

from hotpatch.kernel.abi import resolve_abi
from hotpatch.state.models import FunctionKey, KernelABI, ModuleState


@pytest.fixture
def abi(kernel) -> KernelABI:
    kernel.activate_core()
    return resolve_abi(kernel.paths)


class TestPatchState:
    """Tests for per-patch state files."""

    def test_list_patches_sorted(self, kernel, abi) -> None:
        kernel.add_patch("b")
        kernel.add_patch("a")

        assert kernel.state.list_patches(abi) == ["a", "b"]

    def test_module_state(self, kernel, abi) -> None:
        """Exactly one state holds for each module."""
        kernel.add_patch("on")
        kernel.add_patch("off", enabled=0)
        kernel.add_patch("moving", transition=1)

        assert kernel.state.module_state(abi, "on") is ModuleState.LOADED_ENABLED
        assert kernel.state.module_state(abi, "off") is ModuleState.LOADED_DISABLED
        assert kernel.state.module_state(abi, "moving") is ModuleState.IN_TRANSITION
        assert kernel.state.module_state(abi, "absent") is ModuleState.NOT_LOADED

    def test_snapshot(self, kernel, abi) -> None:
        kernel.add_patch("foo", enabled=0, transition=1, checksum="abc", stack_order=3)

        module = kernel.state.snapshot(abi, "foo")

        assert module.checksum == "abc"
        assert module.stack_order == 3
        assert module.label == "disabling..."

    def test_write_enabled(self, kernel, abi) -> None:
        kernel.add_patch("foo")

        assert kernel.state.write_enabled(abi, "foo", 0) == ""
        assert kernel.enabled("foo") == 0

    def test_write_enabled_failure_text(self, kernel, abi) -> None:
        """A failed write is reported as text, not raised."""
        assert kernel.state.write_enabled(abi, "absent", 1) == "No such file or directory"

    def test_patch_functions(self, kernel, abi) -> None:
        kernel.add_patch(
            "foo", functions={"vmlinux": ["cmdline_proc_show,1"], "ext4": ["ext4_sync_fs,0"]}
        )

        assert list(kernel.state.patch_functions(abi, "foo")) == [
            FunctionKey("ext4", "ext4_sync_fs", 0),
            FunctionKey("vmlinux", "cmdline_proc_show", 1),
        ]


class TestModulesAndTasks:
    """Tests for /sys/module and /proc reads."""

    def test_refcount(self, kernel, abi) -> None:
        kernel.add_patch("foo", refcnt=2)

        assert kernel.state.module_resident("foo")
        assert kernel.state.refcount("foo") == 2
        assert not kernel.state.module_resident("bar")
        assert kernel.state.refcount("bar") is None

    def test_task_ids(self, kernel) -> None:
        """Only numeric process and thread directories count."""
        kernel.add_task(7, patch_state=-1)
        kernel.add_task(12, patch_state=0)
        (kernel.paths.proc_root / "self").mkdir()
        (kernel.paths.proc_root / "99").mkdir()

        assert sorted(kernel.state.task_ids()) == [7, 12]

    def test_task_files(self, kernel) -> None:
        kernel.add_task(7, patch_state=1, comm="sshd", stack="[<0>] ep_poll\n")

        assert kernel.state.task_patch_state(7) == 1
        assert kernel.state.task_comm(7) == "sshd"
        assert kernel.state.task_stack(7) == "[<0>] ep_poll"
        assert kernel.state.task_stack(8) is None
