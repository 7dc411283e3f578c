#!/usr/bin/env python3
"""Parse transaction directives (`//! ...` lines) of a test script into per-transaction configs.

This parser is intentionally strict (fast-fail): the first malformed directive, repeated option
or unknown account stops parsing with a ParseError.
"""

from __future__ import annotations

import json
import re
import string
from dataclasses import dataclass, field
from enum import Enum
from functools import total_ordering
from pathlib import Path
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union


DIRECTIVE_PREFIX = "//!"
NEW_TRANSACTION = "new-transaction"
DEFAULT_SENDER = "default"
ADDRESS_LENGTH = 32
U64_MAX = 2**64 - 1

ADDRESS_RE = re.compile(r"^0[xX]([0-9a-fA-F]+)$")
U64_RE = re.compile(r"^\+?[0-9]+$")
BYTE_ARRAY_RE = re.compile(r'^b"([0-9a-fA-F]*)"$')
WHITESPACE_RE = re.compile(r"\s+")
ASCII_LOWER = str.maketrans(string.ascii_uppercase, string.ascii_lowercase)


class ParseError(RuntimeError):
    pass


def ascii_lower(value: str) -> str:
    return value.translate(ASCII_LOWER)


# Typed literals ---------------------------------------------------------------


@dataclass(frozen=True)
class U64:
    value: int


@dataclass(frozen=True)
class Address:
    value: bytes

    def __str__(self) -> str:
        return "0x" + self.value.hex()


@dataclass(frozen=True)
class ByteArray:
    value: bytes

    def __str__(self) -> str:
        return f'b"{self.value.hex()}"'


@dataclass(frozen=True)
class Bool:
    value: bool


TransactionArgument = Union[U64, Address, ByteArray, Bool]


def parse_u64(raw: str, context: str) -> int:
    if not U64_RE.fullmatch(raw):
        raise ParseError(f"Invalid unsigned integer {raw!r} for {context}")
    value = int(raw)
    if value > U64_MAX:
        raise ParseError(f"Unsigned integer {raw!r} out of range for {context}")
    return value


def parse_address(raw: str) -> bytes:
    m = ADDRESS_RE.fullmatch(raw)
    if not m:
        raise ParseError(f"Invalid address literal {raw!r}")
    digits = m.group(1)
    if len(digits) > ADDRESS_LENGTH * 2:
        raise ParseError(f"Address literal {raw!r} longer than {ADDRESS_LENGTH} bytes")
    return bytes.fromhex(digits.rjust(ADDRESS_LENGTH * 2, "0"))


def parse_as_transaction_argument(token: str) -> TransactionArgument:
    """Parse a self-contained literal: address, u64, byte array or bool (tried in that order)."""
    if ADDRESS_RE.fullmatch(token):
        return Address(parse_address(token))
    if U64_RE.fullmatch(token):
        return U64(parse_u64(token, "transaction argument"))
    m_bytes = BYTE_ARRAY_RE.fullmatch(token)
    if m_bytes and len(m_bytes.group(1)) % 2 == 0:
        return ByteArray(bytes.fromhex(m_bytes.group(1)))
    if token in {"true", "false"}:
        return Bool(token == "true")
    raise ParseError(f"cannot parse {token!r} as transaction argument")


def transaction_argument_to_json(arg: TransactionArgument) -> dict:
    if isinstance(arg, U64):
        return {"type": "u64", "value": arg.value}
    if isinstance(arg, Address):
        return {"type": "address", "value": str(arg)}
    if isinstance(arg, ByteArray):
        return {"type": "bytearray", "value": str(arg)}
    if isinstance(arg, Bool):
        return {"type": "bool", "value": arg.value}
    raise ParseError(f"Internal error: unknown transaction argument {arg!r}")


# Stages and global registry ---------------------------------------------------


@total_ordering
class Stage(Enum):
    """Pipeline stages a transaction passes through; ordered by declaration."""

    COMPILER = "compiler"
    VERIFIER = "verifier"
    SERIALIZER = "serializer"
    RUNTIME = "runtime"

    @classmethod
    def parse(cls, token: str) -> "Stage":
        try:
            return cls(token)
        except ValueError:
            raise ParseError(f"unrecognized stage {token!r}") from None

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Stage):
            return NotImplemented
        members = list(Stage)
        return members.index(self) < members.index(other)

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class AccountData:
    address: bytes


@dataclass(frozen=True)
class GlobalConfig:
    accounts: Mapping[str, AccountData] = field(default_factory=dict)
    genesis_accounts: Mapping[str, AccountData] = field(default_factory=dict)


def global_config_from_mapping(raw: object) -> GlobalConfig:
    if not isinstance(raw, dict):
        raise ParseError("account registry must be a JSON object")

    def section(key: str) -> Dict[str, AccountData]:
        entries = raw.get(key)
        if entries is None:
            entries = {}
        if not isinstance(entries, dict):
            raise ParseError(f"{key} must be an object of name -> account data")
        out: Dict[str, AccountData] = {}
        for name, data in entries.items():
            if not isinstance(data, dict) or "address" not in data:
                raise ParseError(f"account {name!r} in {key} must have an address")
            normalized = ascii_lower(str(name).strip())
            if normalized in out:
                raise ParseError(f"duplicate account {name!r} in {key}")
            out[normalized] = AccountData(address=parse_address(str(data["address"])))
        return out

    return GlobalConfig(accounts=section("accounts"), genesis_accounts=section("genesis_accounts"))


def load_global_config(path: Path) -> GlobalConfig:
    if not path.exists():
        raise ParseError(f"Missing account registry file: {path}")
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed account registry {path}: {exc}") from exc
    return global_config_from_mapping(raw)


# Directive entries ------------------------------------------------------------


@dataclass(frozen=True)
class SelfContained:
    value: TransactionArgument


@dataclass(frozen=True)
class AddressOf:
    name: str


Argument = Union[SelfContained, AddressOf]


@dataclass(frozen=True)
class DisableStages:
    stages: Tuple[Stage, ...]


@dataclass(frozen=True)
class Sender:
    name: str


@dataclass(frozen=True)
class Arguments:
    args: Tuple[Argument, ...]


@dataclass(frozen=True)
class MaxGas:
    amount: int


@dataclass(frozen=True)
class SequenceNumber:
    value: int


Entry = Union[DisableStages, Sender, Arguments, MaxGas, SequenceNumber]


def parse_argument(token: str) -> Argument:
    try:
        return SelfContained(parse_as_transaction_argument(token))
    except ParseError:
        pass
    if token.startswith("{{") and token.endswith("}}"):
        return AddressOf(token[2:-2])
    raise ParseError(f"failed to parse {token!r} as argument")


def split_list(raw: str) -> List[str]:
    return [piece.strip() for piece in raw.split(",") if piece.strip()]


def is_new_transaction(line: str) -> bool:
    s = line.strip()
    if not s.startswith(DIRECTIVE_PREFIX):
        return False
    return s[len(DIRECTIVE_PREFIX) :].lstrip() == NEW_TRANSACTION


def parse_entry(line: str) -> Entry:
    s = WHITESPACE_RE.sub("", line)
    if not s.startswith(DIRECTIVE_PREFIX):
        raise ParseError(f"txn config entry must start with {DIRECTIVE_PREFIX}")
    s = s[len(DIRECTIVE_PREFIX) :].lstrip()

    if s.startswith("sender:"):
        name = s[len("sender:") :].strip()
        if not name:
            raise ParseError("sender cannot be empty")
        return Sender(ascii_lower(name))
    if s.startswith("args:"):
        return Arguments(tuple(parse_argument(tok) for tok in split_list(s[len("args:") :])))
    if s.startswith("no-run:"):
        return DisableStages(tuple(Stage.parse(tok) for tok in split_list(s[len("no-run:") :])))
    if s.startswith("max-gas:"):
        return MaxGas(parse_u64(s[len("max-gas:") :], "max-gas"))
    if s.startswith("sequence-number:"):
        return SequenceNumber(parse_u64(s[len("sequence-number:") :], "sequence-number"))
    raise ParseError(f"failed to parse {s!r} as transaction config entry")


def try_parse_entry(line: str) -> Optional[Entry]:
    if not line.startswith(DIRECTIVE_PREFIX):
        return None
    return parse_entry(line)


# Per-transaction config -------------------------------------------------------


def resolve_argument(arg: Argument, global_config: GlobalConfig) -> TransactionArgument:
    if isinstance(arg, SelfContained):
        return arg.value
    if isinstance(arg, AddressOf):
        data = global_config.accounts.get(arg.name)
        if data is None:
            raise ParseError(f"account {arg.name!r} does not exist")
        return Address(data.address)
    raise ParseError(f"Internal error: unknown argument {arg!r}")


@dataclass(frozen=True)
class Config:
    """Options specific to one transaction, fine tuning how the harness handles it."""

    disabled_stages: FrozenSet[Stage] = frozenset()
    sender: str = DEFAULT_SENDER
    args: Tuple[TransactionArgument, ...] = ()
    max_gas: Optional[int] = None
    sequence_number: Optional[int] = None

    @classmethod
    def build(cls, global_config: GlobalConfig, entries: Iterable[Entry]) -> "Config":
        disabled_stages: set = set()
        sender: Optional[str] = None
        args: Optional[Tuple[TransactionArgument, ...]] = None
        max_gas: Optional[int] = None
        sequence_number: Optional[int] = None

        for entry in entries:
            if isinstance(entry, Sender):
                if sender is not None:
                    raise ParseError("sender already set")
                if (
                    entry.name not in global_config.accounts
                    and entry.name not in global_config.genesis_accounts
                ):
                    raise ParseError(f"account {entry.name!r} does not exist")
                sender = entry.name
            elif isinstance(entry, Arguments):
                if args is not None:
                    raise ParseError("transaction arguments already set")
                args = tuple(resolve_argument(arg, global_config) for arg in entry.args)
            elif isinstance(entry, DisableStages):
                for stage in entry.stages:
                    if stage in disabled_stages:
                        raise ParseError(f"duplicate stage '{stage.value}' in black list")
                    disabled_stages.add(stage)
            elif isinstance(entry, MaxGas):
                if max_gas is not None:
                    raise ParseError("max gas amount already set")
                max_gas = entry.amount
            elif isinstance(entry, SequenceNumber):
                if sequence_number is not None:
                    raise ParseError("sequence number already set")
                sequence_number = entry.value
            else:
                raise ParseError(f"Internal error: unknown entry {entry!r}")

        return cls(
            disabled_stages=frozenset(disabled_stages),
            sender=sender if sender is not None else DEFAULT_SENDER,
            args=args if args is not None else (),
            max_gas=max_gas,
            sequence_number=sequence_number,
        )

    def is_stage_disabled(self, stage: Stage) -> bool:
        return stage in self.disabled_stages


def config_to_json(config: Config) -> dict:
    return {
        "disabled_stages": [stage.value for stage in sorted(config.disabled_stages)],
        "sender": config.sender,
        "args": [transaction_argument_to_json(arg) for arg in config.args],
        "max_gas": config.max_gas,
        "sequence_number": config.sequence_number,
    }


# Whole scripts ----------------------------------------------------------------


@dataclass
class TransactionBlock:
    start_line: int
    entries: List[Entry] = field(default_factory=list)
    body: List[str] = field(default_factory=list)


def split_transactions(lines: Iterable[str]) -> List[TransactionBlock]:
    blocks = [TransactionBlock(start_line=1)]
    for line_no, raw_line in enumerate(lines, start=1):
        line = raw_line.rstrip("\r\n")
        if is_new_transaction(line):
            blocks.append(TransactionBlock(start_line=line_no + 1))
            continue
        try:
            entry = try_parse_entry(line)
        except ParseError as exc:
            raise ParseError(f"{exc} at line {line_no}") from exc
        if entry is None:
            blocks[-1].body.append(line)
        else:
            blocks[-1].entries.append(entry)
    return blocks


def build_configs(global_config: GlobalConfig, blocks: Iterable[TransactionBlock]) -> List[Config]:
    configs: List[Config] = []
    for idx, block in enumerate(blocks, start=1):
        try:
            configs.append(Config.build(global_config, block.entries))
        except ParseError as exc:
            raise ParseError(f"{exc} in transaction {idx} (line {block.start_line})") from exc
    return configs


def parse_script(text: str, global_config: GlobalConfig) -> dict:
    blocks = split_transactions(text.splitlines())
    configs = build_configs(global_config, blocks)
    return {
        "transactions": [
            {
                "index": idx,
                "start_line": block.start_line,
                "config": config_to_json(config),
                "body": block.body,
            }
            for idx, (block, config) in enumerate(zip(blocks, configs), start=1)
        ]
    }
