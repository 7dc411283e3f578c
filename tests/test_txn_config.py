from __future__ import annotations

import dataclasses

import pytest

from txn_config import (
    AccountData,
    Address,
    AddressOf,
    Arguments,
    Bool,
    ByteArray,
    Config,
    DisableStages,
    GlobalConfig,
    MaxGas,
    ParseError,
    SelfContained,
    Sender,
    SequenceNumber,
    Stage,
    U64,
    ascii_lower,
    config_to_json,
    is_new_transaction,
    parse_argument,
    parse_as_transaction_argument,
    parse_entry,
    try_parse_entry,
)


def addr(suffix: str) -> bytes:
    return bytes.fromhex(suffix.rjust(64, "0"))


ALICE = addr("a11ce")
BOB = addr("b0b")
ASSOCIATION = addr("a550c18")

GLOBAL = GlobalConfig(
    accounts={"alice": AccountData(ALICE), "bob": AccountData(BOB)},
    genesis_accounts={"association": AccountData(ASSOCIATION)},
)


# typed literals


@pytest.mark.parametrize(
    "token, expected",
    [
        ("42", U64(42)),
        ("+7", U64(7)),
        ("18446744073709551615", U64(2**64 - 1)),
        ("0xa11ce", Address(ALICE)),
        ("0XB0B", Address(BOB)),
        ('b"deadbeef"', ByteArray(b"\xde\xad\xbe\xef")),
        ('b""', ByteArray(b"")),
        ("true", Bool(True)),
        ("false", Bool(False)),
    ],
)
def test_parse_as_transaction_argument_accepts_literals(token, expected) -> None:
    assert parse_as_transaction_argument(token) == expected


@pytest.mark.parametrize(
    "token",
    ["18446744073709551616", "-1", "0x" + "1" * 65, 'b"abc"', "True", "alice", "{{alice}}", ""],
)
def test_parse_as_transaction_argument_rejects_other_tokens(token) -> None:
    with pytest.raises(ParseError):
        parse_as_transaction_argument(token)


def test_address_and_byte_array_render_as_literals() -> None:
    assert str(Address(BOB)) == "0x" + "0" * 61 + "b0b"
    assert str(ByteArray(b"\x01\xff")) == 'b"01ff"'


# argument parser


def test_parse_argument_self_contained() -> None:
    assert parse_argument("42") == SelfContained(U64(42))
    assert parse_argument("0x1") == SelfContained(Address(addr("1")))


def test_parse_argument_symbolic_reference() -> None:
    assert parse_argument("{{alice}}") == AddressOf("alice")
    assert parse_argument("{{Alice}}") == AddressOf("Alice")


def test_parse_argument_rejects_unknown_token() -> None:
    with pytest.raises(ParseError, match="failed to parse 'alice' as argument"):
        parse_argument("alice")
    with pytest.raises(ParseError, match="as argument"):
        parse_argument("{{alice}")


# boundary detection


@pytest.mark.parametrize(
    "line",
    ["//! new-transaction", "//!new-transaction", "   //!   new-transaction  \n"],
)
def test_is_new_transaction_true(line) -> None:
    assert is_new_transaction(line)


@pytest.mark.parametrize(
    "line",
    [
        "//! new - transaction",
        "//! new-transactions",
        "// new-transaction",
        "new-transaction",
        "//! sender: alice",
        "",
    ],
)
def test_is_new_transaction_false(line) -> None:
    assert not is_new_transaction(line)


# entry parser


def test_parse_sender_is_lowercased() -> None:
    assert parse_entry("//! sender: ALICE") == Sender("alice")
    assert parse_entry("  //!sender:Bob  ") == Sender("bob")


def test_parse_sender_lowercases_ascii_only() -> None:
    assert parse_entry("//! sender: \u00c4LICE") == Sender("\u00c4lice")
    assert ascii_lower("B\u00d6B") == "b\u00d6b"


def test_parse_sender_empty_fails() -> None:
    with pytest.raises(ParseError, match="sender cannot be empty"):
        parse_entry("//! sender:   ")


def test_parse_args_keeps_order_and_drops_empty_pieces() -> None:
    entry = parse_entry("//! args: {{alice}}, 42,, true ,")
    assert entry == Arguments((AddressOf("alice"), SelfContained(U64(42)), SelfContained(Bool(True))))
    assert parse_entry("//! args:") == Arguments(())


def test_parse_args_ignores_spacing_inside_tokens() -> None:
    assert parse_entry("//! args: { { alice } }, 1 0") == Arguments(
        (AddressOf("alice"), SelfContained(U64(10)))
    )


def test_parse_args_single_bad_argument_fails_whole_entry() -> None:
    with pytest.raises(ParseError, match="failed to parse 'nope' as argument"):
        parse_entry("//! args: 1, nope, 2")


def test_parse_no_run_stages() -> None:
    assert parse_entry("//! no-run: verifier, runtime") == DisableStages((Stage.VERIFIER, Stage.RUNTIME))
    assert parse_entry("//! no-run: runtime, runtime") == DisableStages((Stage.RUNTIME, Stage.RUNTIME))


def test_parse_no_run_unknown_stage_fails() -> None:
    with pytest.raises(ParseError, match="unrecognized stage 'linker'"):
        parse_entry("//! no-run: compiler, linker")


def test_parse_numeric_entries() -> None:
    assert parse_entry("//! max-gas: 1 000") == MaxGas(1000)
    assert parse_entry("//! sequence-number: 7") == SequenceNumber(7)


@pytest.mark.parametrize(
    "line",
    [
        "//! max-gas: abc",
        "//! max-gas:",
        "//! max-gas: -5",
        "//! sequence-number: 18446744073709551616",
    ],
)
def test_parse_numeric_entries_reject_bad_numbers(line) -> None:
    with pytest.raises(ParseError):
        parse_entry(line)


def test_parse_entry_requires_prefix() -> None:
    with pytest.raises(ParseError, match="must start with //!"):
        parse_entry("sender: alice")


def test_parse_entry_unknown_keyword_names_cleaned_line() -> None:
    with pytest.raises(ParseError, match="failed to parse 'gas-price:5' as transaction config entry"):
        parse_entry("//! gas-price: 5")


def test_try_parse_entry_skips_non_directives() -> None:
    assert try_parse_entry("main() { return; }") is None
    assert try_parse_entry("  //! sender: alice") is None
    assert try_parse_entry("//! sender: alice") == Sender("alice")
    with pytest.raises(ParseError):
        try_parse_entry("//! bogus")


# config builder


def test_build_defaults() -> None:
    config = Config.build(GLOBAL, [])
    assert config.sender == "default"
    assert config.args == ()
    assert config.disabled_stages == frozenset()
    assert config.max_gas is None
    assert config.sequence_number is None


def test_build_full_block() -> None:
    entries = [
        parse_entry("//! sender: ALICE"),
        parse_entry("//! args: {{bob}}, 42"),
        parse_entry("//! no-run: verifier"),
        parse_entry("//! no-run: runtime"),
        parse_entry("//! max-gas: 100"),
        parse_entry("//! sequence-number: 3"),
    ]
    config = Config.build(GLOBAL, entries)
    assert config.sender == "alice"
    assert config.args == (Address(BOB), U64(42))
    assert config.disabled_stages == {Stage.VERIFIER, Stage.RUNTIME}
    assert config.is_stage_disabled(Stage.RUNTIME)
    assert not config.is_stage_disabled(Stage.COMPILER)
    assert config.max_gas == 100
    assert config.sequence_number == 3


def test_build_sender_may_be_genesis_account() -> None:
    assert Config.build(GLOBAL, [Sender("association")]).sender == "association"


def test_build_sender_twice_fails_even_if_same() -> None:
    with pytest.raises(ParseError, match="sender already set"):
        Config.build(GLOBAL, [Sender("alice"), Sender("alice")])


def test_build_unknown_sender_fails() -> None:
    with pytest.raises(ParseError, match="account 'carol' does not exist"):
        Config.build(GLOBAL, [Sender("carol")])


def test_build_symbolic_argument_only_resolves_regular_accounts() -> None:
    with pytest.raises(ParseError, match="account 'association' does not exist"):
        Config.build(GLOBAL, [Arguments((AddressOf("association"),))])


def test_build_args_twice_fails() -> None:
    entries = [Arguments((SelfContained(U64(1)),)), Arguments(())]
    with pytest.raises(ParseError, match="transaction arguments already set"):
        Config.build(GLOBAL, entries)


def test_build_duplicate_stage_within_directive_fails() -> None:
    with pytest.raises(ParseError, match="duplicate stage 'runtime' in black list"):
        Config.build(GLOBAL, [parse_entry("//! no-run: runtime, runtime")])


def test_build_duplicate_stage_across_directives_fails() -> None:
    entries = [parse_entry("//! no-run: verifier"), parse_entry("//! no-run: compiler, verifier")]
    with pytest.raises(ParseError, match="duplicate stage 'verifier'"):
        Config.build(GLOBAL, entries)


def test_build_max_gas_twice_fails_independent_of_value() -> None:
    with pytest.raises(ParseError, match="max gas amount already set"):
        Config.build(GLOBAL, [MaxGas(100), MaxGas(200)])
    with pytest.raises(ParseError, match="max gas amount already set"):
        Config.build(GLOBAL, [MaxGas(100), MaxGas(100)])


def test_build_sequence_number_twice_fails() -> None:
    with pytest.raises(ParseError, match="sequence number already set"):
        Config.build(GLOBAL, [SequenceNumber(0), SequenceNumber(1)])


def test_config_is_immutable() -> None:
    config = Config.build(GLOBAL, [Sender("bob")])
    with pytest.raises(dataclasses.FrozenInstanceError):
        config.sender = "alice"  # type: ignore[misc]


def test_stages_are_ordered() -> None:
    assert sorted([Stage.RUNTIME, Stage.COMPILER, Stage.SERIALIZER, Stage.VERIFIER]) == list(Stage)
    assert Stage.parse("serializer") is Stage.SERIALIZER


def test_config_to_json() -> None:
    config = Config.build(
        GLOBAL,
        [
            parse_entry("//! no-run: runtime, compiler"),
            parse_entry('//! args: {{alice}}, 5, b"ff", false'),
            parse_entry("//! max-gas: 10"),
        ],
    )
    assert config_to_json(config) == {
        "disabled_stages": ["compiler", "runtime"],
        "sender": "default",
        "args": [
            {"type": "address", "value": "0x" + ALICE.hex()},
            {"type": "u64", "value": 5},
            {"type": "bytearray", "value": 'b"ff"'},
            {"type": "bool", "value": False},
        ],
        "max_gas": 10,
        "sequence_number": None,
    }
