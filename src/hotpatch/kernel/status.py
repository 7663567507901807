"""
Patch Status - Display loaded and installed patch modules.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from hotpatch.kernel.ownership import aggregate_functions
from hotpatch.state.models import FunctionRecord, PatchModule, StalledProcess

if TYPE_CHECKING:
    from hotpatch.install.manager import InstallManager
    from hotpatch.kernel.controller import PatchController

console = Console()


@dataclass
class Listing:
    """Everything `list` shows, gathered in one pass over sysfs."""

    loaded: list[PatchModule] = field(default_factory=list)
    transitioning: str | None = None
    stalled: list[StalledProcess] = field(default_factory=list)
    functions: list[FunctionRecord] = field(default_factory=list)
    installed: list[tuple[str, PatchModule]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "loaded": [m.to_dict() for m in self.loaded],
            "transitioning": self.transitioning,
            "stalled": [
                {"pid": p.pid, "comm": p.comm, "patch_state": p.patch_state, "target": p.target}
                for p in self.stalled
            ],
            "functions": [
                {
                    "object": r.key.object,
                    "function": r.key.function,
                    "sympos": r.key.sympos,
                    "module": r.module,
                    "stack_order": r.stack_order,
                    "transitioning": r.transitioning,
                }
                for r in self.functions
            ],
            "installed": [
                {"name": m.name, "release": release} for release, m in self.installed
            ],
        }


def gather_listing(controller: PatchController, installer: InstallManager) -> Listing:
    state = controller.state
    abi = controller.abi()

    listing = Listing()
    listing.loaded = [state.snapshot(abi, name) for name in state.list_patches(abi)]

    listing.transitioning = state.transitioning_patch(abi)
    if listing.transitioning:
        listing.stalled = controller.monitor.stalled_processes(abi, listing.transitioning)

    owners = aggregate_functions(state, abi)
    listing.functions = [owners[key] for key in sorted(owners)]
    listing.installed = installer.installed()
    return listing


def show_listing(listing: Listing, json_output: bool = False) -> None:
    """Print loaded patches, stalled tasks, function owners and installed patches."""
    if json_output:
        console.print(
            json.dumps(listing.to_dict(), indent=2), markup=False, highlight=False, soft_wrap=True
        )
        return

    console.print("Loaded patch modules:")
    for module in listing.loaded:
        console.print(escape(f"{module.name} [{module.label}]"))

    if listing.stalled:
        show_stalled(listing.stalled)

    if listing.functions:
        table = Table(title="Patched functions")
        table.add_column("Object", style="cyan")
        table.add_column("Function")
        table.add_column("Patch")
        table.add_column("Stack order", justify="right")

        for record in listing.functions:
            owner = record.module
            if record.transitioning:
                owner += " (transition)"
            table.add_row(
                record.key.object,
                f"{record.key.function},{record.key.sympos}",
                owner,
                str(record.stack_order),
                style="yellow" if record.transitioning else "",
            )
        console.print()
        console.print(table)

    console.print()
    console.print("Installed patch modules:")
    for release, module in listing.installed:
        console.print(escape(f"{module.name} ({release})"))


def show_stalled(stalled: list[StalledProcess]) -> None:
    console.print()
    console.print("Stalled processes:")
    for process in stalled:
        console.print(escape(f"{process.pid} {process.comm}"))
        console.print("stack:")
        console.print(process.stack, markup=False, highlight=False)
