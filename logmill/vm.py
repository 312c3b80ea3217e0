"""
LogMill Program Compiler and Virtual Machine

A program is a text file of rules, one per line:

    <kind> <name> [by <label>[,<label>...]] /<regex>/ [<action>]

    counter lines_total /./
    counter http_errors_total by code /status=(?P<code>5\\d\\d)/
    counter bytes_total /bytes=(?P<bytes>\\d+)/ += bytes
    gauge queue_depth /depth=(?P<depth>\\d+)/ = depth

Blank lines and lines starting with '#' are ignored. Every label must be a
named capture group of the rule's regex. A named group `timestamp` sets the
time recorded against the updated datum.

Each rule compiles into a short instruction sequence:

    MATCH <regex>      stop this rule unless the regex matches the line
    TS <group>         take the datum timestamp from a capture group
    LABEL <group>      push a capture group onto the label values
    INC                add 1
    ADD <group>        add the numeric value of a capture group
    SET <group>        set to the numeric value of a capture group

A VM executes one compiled program against every line it receives until
end-of-input.
"""

from __future__ import annotations

import asyncio
import logging
import math
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .store import Metric, MetricKind, MetricsStore

log = logging.getLogger("logmill.vm")

# ── Grammar ───────────────────────────────────────────────────────────────────

_IDENT = r"[A-Za-z_][A-Za-z0-9_]*"
_RULE_RE = re.compile(
    rf"^(?P<kind>counter|gauge)\s+(?P<name>{_IDENT})"
    rf"(?:\s+by\s+(?P<labels>{_IDENT}(?:\s*,\s*{_IDENT})*))?"
    r"\s+/(?P<regex>(?:\\.|[^/\\])*)/"
    r"\s*(?P<action>.*)$"
)
_ACTION_RE = re.compile(rf"^(?P<op>\+=|=)\s*(?P<group>{_IDENT})$")

TIMESTAMP_GROUP = "timestamp"
SYSLOG_TIME_FORMAT = "%b %d %H:%M:%S"


class Opcode(str, Enum):
    MATCH = "match"
    TS = "ts"
    LABEL = "label"
    INC = "inc"
    ADD = "add"
    SET = "set"


@dataclass(frozen=True)
class Instr:
    op: Opcode
    arg: Any = None


@dataclass(frozen=True)
class MetricDecl:
    name: str
    kind: MetricKind
    keys: tuple[str, ...]


@dataclass
class Rule:
    metric: str
    lineno: int
    code: list[Instr] = field(default_factory=list)


@dataclass
class Program:
    """A compiled program: its metric declarations and rule bytecode."""

    name: str
    metrics: dict[str, MetricDecl] = field(default_factory=dict)
    rules: list[Rule] = field(default_factory=list)

    def dump(self) -> str:
        """Return a human-readable listing of the compiled bytecode."""
        out = [f"Prog: {self.name}"]
        for decl in self.metrics.values():
            keys = f" by {','.join(decl.keys)}" if decl.keys else ""
            out.append(f"  decl {decl.kind.value} {decl.name}{keys}")
        for index, rule in enumerate(self.rules):
            out.append(f"  rule {index} (line {rule.lineno}) -> {rule.metric}")
            for pc, instr in enumerate(rule.code):
                arg = instr.arg.pattern if isinstance(instr.arg, re.Pattern) else instr.arg
                operand = "" if arg is None else f" {arg}"
                out.append(f"    {pc:4d} {instr.op.value}{operand}")
        return "\n".join(out) + "\n"


class CompileError(Exception):
    """Every error found while compiling one program file."""

    def __init__(self, program: str, errors: list[str]) -> None:
        super().__init__(f"{program}: " + "; ".join(errors))
        self.program = program
        self.errors = errors


# ── Compiler ──────────────────────────────────────────────────────────────────


def _compile_rule(lineno: int, text: str, errors: list[str]) -> tuple[MetricDecl, Rule] | None:
    m = _RULE_RE.match(text)
    if m is None:
        errors.append(f"line {lineno}: syntax error: {text!r}")
        return None

    kind = MetricKind(m.group("kind"))
    name = m.group("name")
    keys = tuple(k.strip() for k in m.group("labels").split(",")) if m.group("labels") else ()

    try:
        regex = re.compile(m.group("regex").replace("\\/", "/"))
    except re.error as exc:
        errors.append(f"line {lineno}: bad regex for {name}: {exc}")
        return None

    groups = set(regex.groupindex)
    ok = True
    for key in keys:
        if key not in groups:
            errors.append(f"line {lineno}: label {key!r} is not a named group of the regex")
            ok = False
    if len(set(keys)) != len(keys):
        errors.append(f"line {lineno}: duplicate label in {name}")
        ok = False

    code = [Instr(Opcode.MATCH, regex)]
    if TIMESTAMP_GROUP in groups:
        code.append(Instr(Opcode.TS, TIMESTAMP_GROUP))
    code.extend(Instr(Opcode.LABEL, key) for key in keys)

    action = m.group("action").strip()
    if not action:
        if kind is MetricKind.GAUGE:
            errors.append(f"line {lineno}: gauge {name} requires '= <group>' or '+= <group>'")
            ok = False
        code.append(Instr(Opcode.INC))
    else:
        a = _ACTION_RE.match(action)
        if a is None:
            errors.append(f"line {lineno}: bad action {action!r}")
            return None
        group = a.group("group")
        if group not in groups:
            errors.append(f"line {lineno}: {group!r} is not a named group of the regex")
            ok = False
        code.append(Instr(Opcode.ADD if a.group("op") == "+=" else Opcode.SET, group))

    if not ok:
        return None
    return MetricDecl(name, kind, keys), Rule(metric=name, lineno=lineno, code=code)


def compile_program(name: str, source: str) -> Program:
    """
    Compile program source text.

    Raises:
        CompileError: carrying every error found in the file.
    """
    program = Program(name=name)
    errors: list[str] = []

    for lineno, raw in enumerate(source.splitlines(), start=1):
        text = raw.strip()
        if not text or text.startswith("#"):
            continue
        compiled = _compile_rule(lineno, text, errors)
        if compiled is None:
            continue
        decl, rule = compiled
        existing = program.metrics.get(decl.name)
        if existing is not None and existing != decl:
            errors.append(
                f"line {lineno}: {decl.name} redeclared as {decl.kind.value}"
                f" by {list(decl.keys)}, was {existing.kind.value} by {list(existing.keys)}"
            )
            continue
        program.metrics[decl.name] = decl
        program.rules.append(rule)

    if errors:
        raise CompileError(name, errors)
    return program


# ── Timestamps ────────────────────────────────────────────────────────────────


def parse_timestamp(text: str, syslog_use_current_year: bool = True) -> float | None:
    """
    Parse a syslog (`Oct 18 12:00:00`) or ISO 8601 timestamp to epoch seconds.

    Syslog timestamps carry no year; strptime yields 1900, which is replaced
    by the current year when syslog_use_current_year is set.
    """
    text = " ".join(text.split())
    try:
        parsed = datetime.strptime(text, SYSLOG_TIME_FORMAT)
        if syslog_use_current_year:
            parsed = parsed.replace(year=datetime.now().year)
        return parsed.timestamp()
    except ValueError:
        pass
    try:
        return datetime.fromisoformat(text).timestamp()
    except ValueError:
        return None


# ── Virtual Machine ───────────────────────────────────────────────────────────


class VM:
    """Runs one compiled program against a stream of lines."""

    def __init__(
        self,
        program: Program,
        store: MetricsStore,
        syslog_use_current_year: bool = True,
    ) -> None:
        self.program = program
        self.name = program.name
        self.syslog_use_current_year = syslog_use_current_year
        self.queue: asyncio.Queue[str | None] = asyncio.Queue()
        self.lines_processed = 0
        self._metrics: dict[str, Metric] = {
            decl.name: store.add(Metric(decl.name, program.name, decl.kind, decl.keys))
            for decl in program.metrics.values()
        }

    def process_line(self, line: str) -> None:
        for rule in self.program.rules:
            self._execute(rule, line)
        self.lines_processed += 1

    def _execute(self, rule: Rule, line: str) -> None:
        match: re.Match[str] | None = None
        timestamp: float | None = None
        labels: list[str] = []

        for instr in rule.code:
            op = instr.op
            if op is Opcode.MATCH:
                match = instr.arg.search(line)
                if match is None:
                    return
            elif op is Opcode.TS:
                raw = match.group(instr.arg)
                if raw is not None:
                    timestamp = parse_timestamp(raw, self.syslog_use_current_year)
            elif op is Opcode.LABEL:
                labels.append(match.group(instr.arg) or "")
            else:
                value = 1.0
                if op is not Opcode.INC:
                    raw = match.group(instr.arg)
                    try:
                        value = float(raw)
                        if not math.isfinite(value):
                            raise ValueError(raw)
                    except (TypeError, ValueError):
                        log.warning(
                            f"> VM: {self.name}:{rule.lineno}: non-numeric or non-finite value {raw!r} "
                            f"for {rule.metric}, skipped"
                        )
                        return
                datum = self._metrics[rule.metric].get_datum(*labels)
                if timestamp is None:
                    timestamp = time.time()
                if op is Opcode.SET:
                    datum.set(value, timestamp)
                else:
                    datum.add(value, timestamp)

    async def run(self) -> None:
        """Consume lines until end-of-input (None) is received."""
        log.debug(f"> VM: {self.name} started.")
        while True:
            line = await self.queue.get()
            if line is None:
                break
            try:
                self.process_line(line)
            except Exception as exc:
                log.error(f"> VM: {self.name} failed on line {line!r}: {exc}", exc_info=True)
        log.info(f"> VM: {self.name} finished after {self.lines_processed} line(s).")
