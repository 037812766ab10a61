# Copyright (c) 2026 Emiliano G Solazzi
# 
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
# 
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE. See the
# GNU General Public License for more details.
# 
# You should have received a copy of the GNU General Public License
# along with this program. If not, see <https://www.gnu.org/licenses/>.
# 
# Commercial licenses available. Contact: emiliano.arlington@gmail.com
import pytest
from bitcoin_protocol import *
from multisig_errors import ConfigurationError


_G = bytes.fromhex("0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798")


def _sample_tx(witness: bool = False) -> Transaction:
    tx = Transaction(
        version=2,
        inputs=[
            TxIn("aa" * 32, 0, b"", SEQUENCE_RBF),
            TxIn("bb" * 32, 5, b"\x51", SEQUENCE_FINAL),
        ],
        outputs=[
            TxOut(12_345, bytes.fromhex("0014" + "22" * 20)),
            TxOut(600, p2sh_script(b"\x51")),
        ],
        locktime=800_000,
    )
    if witness:
        tx.inputs[0].witness = [b"", b"\x30" * 71, b"\x52\xae"]
    return tx


class TestEncoding:

    @pytest.mark.parametrize("n,expected", [
        (0, "00"),
        (0xfc, "fc"),
        (0xfd, "fdfd00"),
        (0xffff, "fdffff"),
        (0x10000, "fe00000100"),
        (0x100000000, "ff0000000001000000"),
    ])
    def test_compact_size(self, n, expected):
        encoded = compact_size(n)
        assert encoded.hex() == expected
        assert read_compact_size(encoded, 0) == (n, len(encoded))

    @pytest.mark.parametrize("n,expected", [
        (0, "00"),
        (1, "51"),
        (16, "60"),
        (-1, "4f"),
        (17, "0111"),
        (128, "028000"),
        (-128, "028080"),
    ])
    def test_push_int(self, n, expected):
        assert push_int(n).hex() == expected

    def test_push_data_sizes(self):
        assert push_data(b"\x01" * 75)[0] == 75
        assert push_data(b"\x01" * 76)[:2] == bytes([OP_PUSHDATA1, 76])
        assert push_data(b"\x01" * 300)[:3] == bytes([OP_PUSHDATA2]) + (300).to_bytes(2, "little")

    def test_hash160_of_generator(self):
        assert hash160(_G).hex() == "751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_iter_script(self):
        script = bytes([OP_0]) + push_data(b"\xab" * 3) + bytes([OP_CHECKMULTISIG])
        assert list(iter_script(script)) == [
            (OP_0, b""), (3, b"\xab" * 3), (OP_CHECKMULTISIG, None),
        ]

    def test_iter_script_truncated(self):
        with pytest.raises(ValueError):
            list(iter_script(b"\x05\x01\x02"))


class TestAddressCodec:

    def test_p2pkh_of_generator(self):
        script = address_to_script("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH", "mainnet")
        assert script == bytes.fromhex(
            "76a914751e76e8199196d454941c45d1b3a323f1433bd688ac")

    def test_p2wpkh(self):
        script = address_to_script("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", "testnet")
        assert script.hex() == "0014751e76e8199196d454941c45d1b3a323f1433bd6"

    def test_p2sh_roundtrip(self):
        address = p2sh_address(b"\x51", "testnet")
        assert address.startswith("2")
        assert address_to_script(address, "testnet") == p2sh_script(b"\x51")

    def test_p2wsh_roundtrip(self):
        address = p2wsh_address(b"\x51", "regtest")
        assert address.startswith("bcrt1q")
        assert address_to_script(address, "regtest") == p2wsh_script(b"\x51")

    @pytest.mark.parametrize("address,network", [
        ("bc1qw508d6qejxtdg4y5r3zarvary0c5xw7kv8f3t4", "testnet"),
        ("tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx", "mainnet"),
        ("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMH", "testnet"),
        ("1BgGZ9tcN4rm9KBzDn7KprQz87SZ26SAMJ", "mainnet"),
        ("", "mainnet"),
        ("hello world", "mainnet"),
    ])
    def test_rejected_addresses(self, address, network):
        assert not is_valid_address(address, network)
        with pytest.raises(ValueError):
            address_to_script(address, network)

    def test_unknown_network(self):
        with pytest.raises(ConfigurationError):
            get_network("litecoin")


class TestTransaction:

    def test_legacy_serialization_has_no_marker(self):
        raw = _sample_tx().serialize()
        assert raw[:4] == (2).to_bytes(4, "little")
        assert raw[4] == 2          # input count

    def test_witness_serialization(self):
        tx = _sample_tx(witness=True)
        raw = tx.serialize()
        assert raw[4:6] == b"\x00\x01"
        assert tx.serialize(include_witness=False) == _sample_tx().serialize()

    def test_txid_ignores_witness(self):
        assert _sample_tx(witness=True).txid() == _sample_tx().txid()

    @pytest.mark.parametrize("witness", [False, True])
    def test_parse_roundtrip(self, witness):
        tx = _sample_tx(witness)
        parsed = Transaction.parse(tx.serialize())
        assert parsed == tx
        assert parsed.inputs[1].witness == []

    def test_parse_rejects_trailing_bytes(self):
        with pytest.raises(ValueError, match="trailing"):
            Transaction.parse(_sample_tx().serialize() + b"\x00")

    def test_parse_rejects_truncation(self):
        raw = _sample_tx().serialize()
        with pytest.raises(ValueError):
            Transaction.parse(raw[:-10])


class TestSighash:
    """Digest commitments; both schemes cover all inputs and outputs."""

    def test_bip143_commits_to_amount(self):
        tx = _sample_tx()
        a = BIP143Sighash(tx, 0).compute(b"\x52\xae", 1_000)
        b = BIP143Sighash(tx, 0).compute(b"\x52\xae", 1_001)
        assert a != b

    def test_bip143_commits_to_outputs(self):
        tx = _sample_tx()
        before = BIP143Sighash(tx, 1).compute(b"\x52\xae", 1_000)
        tx.outputs[1].amount += 1
        assert BIP143Sighash(tx, 1).compute(b"\x52\xae", 1_000) != before

    def test_legacy_commits_to_other_inputs(self):
        tx = _sample_tx()
        before = LegacySighash(tx, 0).compute(b"\x52\xae")
        tx.inputs[1].sequence = 0
        assert LegacySighash(tx, 0).compute(b"\x52\xae") != before

    def test_digests_differ_per_input(self):
        tx = _sample_tx()
        assert LegacySighash(tx, 0).compute(b"\x52\xae") != \
            LegacySighash(tx, 1).compute(b"\x52\xae")
        assert BIP143Sighash(tx, 0).compute(b"\x52\xae", 5) != \
            BIP143Sighash(tx, 1).compute(b"\x52\xae", 5)

    def test_legacy_ignores_existing_script_sigs(self):
        tx = _sample_tx()
        before = LegacySighash(tx, 0).compute(b"\x52\xae")
        tx.inputs[1].script_sig = b"\x00\x51"
        assert LegacySighash(tx, 0).compute(b"\x52\xae") == before

    @pytest.mark.parametrize("cls", [LegacySighash, BIP143Sighash])
    def test_index_out_of_range(self, cls):
        with pytest.raises(IndexError):
            cls(_sample_tx(), 2)

    def test_only_sighash_all(self):
        tx = _sample_tx()
        with pytest.raises(ValueError):
            LegacySighash(tx, 0).compute(b"\x52\xae", 0x02)
        with pytest.raises(ValueError):
            BIP143Sighash(tx, 0).compute(b"\x52\xae", 1, 0x81)
