"""
LogMill Program Loader

Compiles the program files found in the program directory, registers their
metrics in the store and runs one VM task per program. A fan-out task reads
the shared line conduit and hands every line to every VM; when the conduit
reports end-of-input, each VM receives it too and `vms_done` is set once all
of them have finished.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path
from typing import TextIO

from .conduit import LineConduit
from .store import MetricsStore
from .vm import VM, CompileError, MetricDecl, Program, compile_program

log = logging.getLogger("logmill.loader")

PROGRAM_EXTENSIONS: tuple[str, ...] = (".mtail", ".prog")


class Loader:
    """Loads programs and manages the VM lifecycle."""

    def __init__(
        self,
        store: MetricsStore,
        lines: LineConduit,
        compile_only: bool = False,
        dump_bytecode: bool = False,
        syslog_use_current_year: bool = True,
        output: TextIO | None = None,
    ) -> None:
        self.store = store
        self.lines = lines
        self.compile_only = compile_only
        self.dump_bytecode = dump_bytecode
        self.syslog_use_current_year = syslog_use_current_year
        self._output = output
        self.vms: dict[str, VM] = {}
        # Metric name -> (program, declaration) across every compiled program.
        self._declared: dict[str, tuple[str, MetricDecl]] = {}
        self.vms_done = asyncio.Event()
        self._tasks: list[asyncio.Task[None]] = []
        self._fanout: asyncio.Task[None] | None = None
        self._started = False

    def _program_files(self, path: Path) -> list[Path]:
        if path.is_file():
            return [path]
        return sorted(
            p for p in path.iterdir()
            if p.is_file() and p.suffix in PROGRAM_EXTENSIONS
        )

    def load_programs(self, path: str) -> int:
        """
        Compile every program file under `path` and return how many failed.

        An unreadable directory counts as a single error.
        """
        root = Path(path)
        try:
            files = self._program_files(root)
        except OSError as exc:
            log.error(f"> LOADER: Cannot list programs in {path}: {exc}")
            return 1

        errors = 0
        for file in files:
            if not self.load_program(file):
                errors += 1
        log.info(f"> LOADER: {len(files) - errors}/{len(files)} program(s) loaded from {path}.")
        return errors

    def load_program(self, file: Path) -> bool:
        try:
            source = file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            log.error(f"> LOADER: Failed to read program {file}: {exc}")
            return False

        try:
            program = compile_program(file.name, source)
        except CompileError as exc:
            for err in exc.errors:
                log.error(f"> LOADER: Compile error in {file.name}: {err}")
            return False

        conflict = self._conflicting_declaration(program)
        if conflict is not None:
            log.error(f"> LOADER: Compile error in {file.name}: {conflict}")
            return False
        for decl in program.metrics.values():
            self._declared.setdefault(decl.name, (program.name, decl))

        if self.dump_bytecode:
            out = self._output or sys.stdout
            out.write(program.dump())
        if self.compile_only or self.dump_bytecode:
            return True

        if program.name in self.vms:
            log.warning(f"> LOADER: Program {program.name} already loaded, skipping.")
            return True
        self.vms[program.name] = VM(program, self.store, self.syslog_use_current_year)
        log.info(f"> LOADER: Loaded program {program.name} ({len(program.rules)} rule(s)).")
        return True

    def _conflicting_declaration(self, program: Program) -> str | None:
        """Reject a metric name already declared elsewhere with another kind or labels."""
        for decl in program.metrics.values():
            owner = self._declared.get(decl.name)
            if owner is None:
                continue
            other_program, other = owner
            if other_program != program.name and (other.kind, other.keys) != (decl.kind, decl.keys):
                return (
                    f"{decl.name} declared as {decl.kind.value} by {list(decl.keys)}, "
                    f"but {other_program} declares it as {other.kind.value} by {list(other.keys)}"
                )
        return None

    # ── Execution ─────────────────────────────────────────────────────────────

    def start(self) -> None:
        """Launch one task per VM and the conduit fan-out task."""
        if self._started:
            return
        self._started = True
        for vm in self.vms.values():
            self._tasks.append(asyncio.create_task(vm.run(), name=f"vm:{vm.name}"))
        self._fanout = asyncio.create_task(self._run(), name="loader")

    async def _run(self) -> None:
        async for line in self.lines:
            for vm in self.vms.values():
                vm.queue.put_nowait(line)
        log.info("> LOADER: End of input, draining VMs.")
        for vm in self.vms.values():
            vm.queue.put_nowait(None)
        if self._tasks:
            await asyncio.gather(*self._tasks)
        self.vms_done.set()
        log.info("> LOADER: All VMs done.")

    async def wait_done(self) -> None:
        """Block until every VM has observed end-of-input."""
        if not self._started:
            return
        await self.vms_done.wait()
