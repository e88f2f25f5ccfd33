"""
Tests for raw transaction decoding.

Covers legacy and segwit serializations, txid / weight computation,
malformed input rejection and output script classification.
"""
import pytest

from txradar.core.tx_parser import (
    MalformedTransactionError,
    classify_script,
    parse_transaction,
    parse_transaction_hex,
)

GENESIS_COINBASE_HEX = (
    "01000000010000000000000000000000000000000000000000000000000000000000000000"
    "ffffffff4d04ffff001d0104455468652054696d65732030332f4a616e2f32303039204368"
    "616e63656c6c6f72206f6e206272696e6b206f66207365636f6e64206261696c6f75742066"
    "6f722062616e6b73ffffffff0100f2052a01000000434104678afdb0fe5548271967f1a671"
    "30b7105cd6a828e03909a67962e0ea1f61deb649f6bc3f4cef38c4f35504e51ec112de5c38"
    "4df7ba0b8d578a4c702b6bf11d5fac00000000"
)
GENESIS_TXID = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"

SPENT_TXID = "11" * 32


@pytest.fixture
def segwit_tx_bytes():
    """One input with a two-item witness, one P2WPKH output."""
    signature = b"\x30" + bytes(71)
    pubkey = b"\x02" + bytes(32)
    script = bytes.fromhex("0014") + bytes(20)

    legacy = (
        bytes.fromhex("02000000")
        + b"\x01" + bytes.fromhex(SPENT_TXID)[::-1] + bytes.fromhex("01000000")
        + b"\x00" + bytes.fromhex("fdffffff")
        + b"\x01" + (50_000).to_bytes(8, "little") + bytes([len(script)]) + script
        + bytes.fromhex("00000000")
    )
    witness = b"\x02" + bytes([len(signature)]) + signature + bytes([len(pubkey)]) + pubkey
    segwit = legacy[:4] + b"\x00\x01" + legacy[4:-4] + witness + legacy[-4:]
    return legacy, segwit


# =============================================================================
# Legacy Transactions
# =============================================================================


class TestLegacyParsing:
    """Tests for the pre-segwit serialization."""

    def test_genesis_coinbase(self):
        """The genesis coinbase decodes to its well-known txid and sizes."""
        tx = parse_transaction_hex(GENESIS_COINBASE_HEX)

        assert tx.txid == GENESIS_TXID
        assert tx.version == 1
        assert tx.size == 204
        assert tx.weight == 816
        assert tx.vsize == 204
        assert len(tx.inputs) == 1
        assert tx.inputs[0].prev_txid == "00" * 32
        assert tx.inputs[0].prev_vout == 0xFFFFFFFF
        assert tx.outputs[0].value == 5_000_000_000
        assert classify_script(tx.outputs[0].script_pubkey) == "p2pk"
        assert tx.locktime == 0

    def test_final_sequence_does_not_signal_rbf(self):
        tx = parse_transaction_hex(GENESIS_COINBASE_HEX)
        assert not tx.is_rbf_signaling

    def test_builder_roundtrip_preserves_fields(self, raw_tx_builder):
        """Fields written by the test builder come back unchanged."""
        raw = raw_tx_builder(
            [(SPENT_TXID, 3), ("22" * 32, 0)],
            [10_000, 20_000],
            sequence=0xFFFFFFFD,
            locktime=840_000,
        )
        tx = parse_transaction(raw)

        assert [i.outpoint for i in tx.inputs] == [(SPENT_TXID, 3), ("22" * 32, 0)]
        assert [o.value for o in tx.outputs] == [10_000, 20_000]
        assert tx.locktime == 840_000
        assert tx.is_rbf_signaling
        assert tx.total_output_value == 30_000
        assert tx.weight == len(raw) * 4


# =============================================================================
# Segwit Transactions
# =============================================================================


class TestSegwitParsing:
    """Tests for BIP144 serialization and BIP141 weight."""

    def test_weight_and_vsize(self, segwit_tx_bytes):
        legacy, segwit = segwit_tx_bytes
        tx = parse_transaction(segwit)

        assert len(legacy) == 82
        assert tx.size == 192
        assert tx.weight == 82 * 3 + 192
        assert tx.vsize == 110

    def test_txid_excludes_witness(self, segwit_tx_bytes):
        """The txid of the segwit form equals the txid of the stripped form."""
        legacy, segwit = segwit_tx_bytes
        assert parse_transaction(segwit).txid == parse_transaction(legacy).txid

    def test_witness_attached_to_input(self, segwit_tx_bytes):
        _, segwit = segwit_tx_bytes
        tx = parse_transaction(segwit)

        assert len(tx.inputs[0].witness) == 2
        assert len(tx.inputs[0].witness[0]) == 72
        assert tx.inputs[0].prev_txid == SPENT_TXID
        assert tx.inputs[0].prev_vout == 1
        assert tx.is_rbf_signaling

    def test_witness_flag_without_witness_data_rejected(self, segwit_tx_bytes):
        legacy, _ = segwit_tx_bytes
        empty_witness = legacy[:4] + b"\x00\x01" + legacy[4:-4] + b"\x00" + legacy[-4:]
        with pytest.raises(MalformedTransactionError):
            parse_transaction(empty_witness)


# =============================================================================
# Malformed Input
# =============================================================================


class TestMalformedTransactions:
    """Malformed bytes raise instead of producing a partial transaction."""

    def test_truncated(self):
        raw = bytes.fromhex(GENESIS_COINBASE_HEX)
        with pytest.raises(MalformedTransactionError, match="truncated"):
            parse_transaction(raw[:-10])

    def test_trailing_bytes(self):
        raw = bytes.fromhex(GENESIS_COINBASE_HEX) + b"\x00"
        with pytest.raises(MalformedTransactionError, match="trailing"):
            parse_transaction(raw)

    def test_empty(self):
        with pytest.raises(MalformedTransactionError):
            parse_transaction(b"")

    def test_absurd_input_count(self):
        raw = bytes.fromhex("02000000") + b"\xfe\xff\xff\xff\x00"
        with pytest.raises(MalformedTransactionError, match="exceeds"):
            parse_transaction(raw)

    def test_no_outputs(self):
        raw = (
            bytes.fromhex("02000000")
            + b"\x01" + bytes(32) + bytes(4) + b"\x00" + b"\xff\xff\xff\xff"
            + b"\x00"
            + bytes(4)
        )
        with pytest.raises(MalformedTransactionError, match="no outputs"):
            parse_transaction(raw)

    def test_invalid_hex(self):
        with pytest.raises(MalformedTransactionError, match="invalid hex"):
            parse_transaction_hex("zz")


# =============================================================================
# Script Classification
# =============================================================================


class TestClassifyScript:
    """Tests for standard output template names."""

    @pytest.mark.parametrize(
        "script_hex,expected",
        [
            ("76a914" + "00" * 20 + "88ac", "p2pkh"),
            ("a914" + "00" * 20 + "87", "p2sh"),
            ("0014" + "00" * 20, "p2wpkh"),
            ("0020" + "00" * 32, "p2wsh"),
            ("5120" + "00" * 32, "p2tr"),
            ("6a0461626364", "op_return"),
            ("21" + "02" * 33 + "ac", "p2pk"),
            ("5121" + "02" * 33 + "51ae", "multisig"),
            ("51", "nonstandard"),
        ],
    )
    def test_templates(self, script_hex, expected):
        assert classify_script(bytes.fromhex(script_hex)) == expected
