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
from hd_keys import *
from multisig_errors import ConfigurationError, InvalidBackupPhrase, InvalidIndex, InvalidPath
from mnemonic import Mnemonic
from concurrent.futures import ThreadPoolExecutor


# BIP-39 reference phrase (all-zero entropy, 24 words)
_PHRASE = " ".join(["abandon"] * 23 + ["art"])

# BIP-32 test vector 1
_VECTOR1_SEED = bytes.fromhex("000102030405060708090a0b0c0d0e0f")
_VECTOR1_MASTER_XPUB = (
    "xpub661MyMwAqRbcFtXgS5sYJABqqG9YLmC4Q1Rdap9gSE8NqtwybGhePY2gZ29ESFjqJo"
    "Cu1Rupje8YtGqsefD265TMg7usUDFdp6W1EGMcet8"
)
_VECTOR1_CHILD_XPUB = (
    "xpub68Gmy5EdvgibQVfPdqkBBCHxA5htiqg55crXYuXoQRKfDBFA1WEjWgP6LHhwBZeNK1"
    "VTsfTFUHCdrfp1bgwQ9xv5ski8PX9rL2dZXvgGDnw"
)


class TestPaths:
    """Path parsing and the hardened-prefix rule."""

    @pytest.mark.parametrize("path", [
        "m/48'/0'/0'/2'/0",
        "m/48'/1'/0'/2'/7",
        "m/48h/0h/0h/2h/1",
        "m/44'/0'/0'",
        "m/0",
    ])
    def test_valid_paths(self, path):
        assert validate_path(path)

    @pytest.mark.parametrize("path", [
        "m",
        "",
        "48'/0'/0'/2'/0",
        "m/48'/0/0'/2'/0",
        "m/48'/0'/0'/2'/x",
        "m/48'/0'//2'/0",
        "m/2147483648",
        "m/-1",
    ])
    def test_invalid_paths(self, path):
        assert not validate_path(path)

    def test_parse_and_format(self):
        segments = parse_path("m/48H/1h/0'/2'/3")
        assert [s.hardened for s in segments] == [True, True, True, True, False]
        assert segments[0].child_number == 48 + HARDENED_OFFSET
        assert segments[-1].child_number == 3
        assert format_path(segments) == "m/48'/1'/0'/2'/3"

    def test_parse_rejects_non_string(self):
        with pytest.raises(InvalidPath):
            parse_path(None)

    def test_default_prefix(self):
        assert default_prefix("mainnet") == "m/48'/0'/0'/2'"
        assert default_prefix("testnet") == "m/48'/1'/0'/2'"


class TestHDNodes:
    """BIP-32 derivation against published vectors."""

    def test_vector1_master(self):
        master = master_node(_VECTOR1_SEED, "mainnet")
        assert export_xpub(master) == _VECTOR1_MASTER_XPUB
        assert master.depth == 0

    def test_vector1_hardened_child(self):
        master = master_node(_VECTOR1_SEED, "mainnet")
        child = derive_node(master, parse_path("m/0'"))
        assert export_xpub(child) == _VECTOR1_CHILD_XPUB
        assert child.depth == 1

    def test_public_derivation_matches_private(self):
        account = derive_node(master_node(_VECTOR1_SEED), parse_path("m/48'/1'/0'/2'"))
        for i in range(3):
            segment = [PathSegment(i, hardened=False)]
            assert derive_node(account, segment).public_byte == \
                derive_node(account.public(), segment).public_byte

    def test_public_node_cannot_harden(self):
        master = master_node(_VECTOR1_SEED).public()
        with pytest.raises(InvalidPath):
            derive_node(master, [PathSegment(0, hardened=True)])

    def test_xpub_roundtrip(self):
        node = derive_node(master_node(_VECTOR1_SEED, "testnet"), parse_path("m/1'/2"))
        encoded = export_xpub(node)
        assert encoded.startswith("tpub")
        imported = import_xpub(encoded, "testnet")
        assert not imported.is_private
        assert imported.public_byte == node.public_byte
        assert export_xpub(imported) == encoded

    @pytest.mark.parametrize("encoded", ["xpubnotreal", "", _VECTOR1_MASTER_XPUB[:-1]])
    def test_import_rejects_garbage(self, encoded):
        with pytest.raises(ConfigurationError):
            import_xpub(encoded, "mainnet")


class TestSignerKey:

    def test_from_private_key(self):
        key = SignerKey.from_private_key((1).to_bytes(32, "big"))
        assert key.public_key.hex() == (
            "0279be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"
        )
        assert key.has_private_key
        assert key.mnemonic == "" and key.path == ""

    def test_mismatched_private_key_rejected(self):
        a = SignerKey.from_private_key((1).to_bytes(32, "big"))
        b = SignerKey.from_private_key((2).to_bytes(32, "big"))
        with pytest.raises(ValueError):
            SignerKey(public_key=a.public_key, private_key=b.private_key)

    def test_public_only_strips_secrets(self):
        signer = KeyDerivation(2).recover(_PHRASE, 1)
        public = signer.public_only()
        assert public.private_key is None
        assert public.mnemonic == ""
        assert public.path == signer.path

    def test_dict_roundtrip(self):
        signer = KeyDerivation(2).recover(_PHRASE, 0)
        assert "sk" not in signer.to_dict()
        assert SignerKey.from_dict(signer.to_dict(include_private=True)) == signer

    def test_words(self):
        assert len(KeyDerivation(1).recover(_PHRASE, 0).words) == 24


class TestKeyDerivation:
    """Generation and recovery of signer keys from backup phrases."""

    def test_generate_produces_24_words(self):
        signer = KeyDerivation(3).generate(0)
        assert len(signer.words) == 24
        assert Mnemonic("english").check(signer.mnemonic)
        assert signer.path == "m/48'/1'/0'/2'/0"
        assert signer.account_xpub.startswith("tpub")

    def test_shorter_phrases_supported(self):
        signer = KeyDerivation(1, strength=128).generate(0)
        assert len(signer.words) == 12

    def test_recover_is_deterministic(self):
        kd = KeyDerivation(3)
        a = kd.recover(_PHRASE, 2)
        b = kd.recover(_PHRASE, 2)
        assert a == b
        assert a.path == "m/48'/1'/0'/2'/2"

    def test_recover_matches_manual_derivation(self):
        seed = Mnemonic.to_seed(_PHRASE)
        expected = derive_node(master_node(seed, "testnet"), parse_path("m/48'/1'/0'/2'/1"))
        assert KeyDerivation(2).recover(_PHRASE, 1).public_key == expected.public_byte

    def test_recover_generated(self):
        kd = KeyDerivation(3, "mainnet")
        signer = kd.generate(1)
        restored = kd.recover(signer.mnemonic, 1)
        assert restored.public_key == signer.public_key
        assert restored.private_key == signer.private_key

    def test_recover_accepts_word_list_and_extra_whitespace(self):
        kd = KeyDerivation(1)
        expected = kd.recover(_PHRASE, 0)
        assert kd.recover(_PHRASE.split(), 0) == expected
        assert kd.recover("  " + _PHRASE.replace(" ", "   ") + "\n", 0) == expected

    def test_indices_give_distinct_keys(self):
        kd = KeyDerivation(3)
        keys = {kd.recover(_PHRASE, i).public_key for i in range(3)}
        assert len(keys) == 3

    def test_network_changes_keys(self):
        main = KeyDerivation(1, "mainnet").recover(_PHRASE, 0)
        test = KeyDerivation(1, "testnet").recover(_PHRASE, 0)
        assert main.public_key != test.public_key

    def test_passphrase_changes_keys(self):
        plain = KeyDerivation(1).recover(_PHRASE, 0)
        salted = KeyDerivation(1, passphrase="TREZOR").recover(_PHRASE, 0)
        assert plain.public_key != salted.public_key

    def test_bad_checksum(self):
        with pytest.raises(InvalidBackupPhrase):
            KeyDerivation(1).recover(" ".join(["abandon"] * 24), 0)

    def test_unknown_word(self):
        with pytest.raises(InvalidBackupPhrase, match="Invalid mnemonic"):
            KeyDerivation(1).recover("invalid mnemonic phrase here", 0)

    @pytest.mark.parametrize("index", [-1, 3, True, "0", 1.0])
    def test_bad_index(self, index):
        with pytest.raises(InvalidIndex):
            KeyDerivation(3).recover(_PHRASE, index)

    def test_bad_phrase_reported_before_bad_index(self):
        with pytest.raises(InvalidBackupPhrase):
            KeyDerivation(3).recover("not a phrase", 9)

    @pytest.mark.parametrize("count", [0, -2, True, 2.5])
    def test_bad_signer_count(self, count):
        with pytest.raises(ConfigurationError):
            KeyDerivation(count)

    def test_prefix_must_be_hardened(self):
        with pytest.raises(InvalidPath):
            KeyDerivation(3, derivation_prefix="m/48'/1'/0'/2")
        with pytest.raises(InvalidPath):
            KeyDerivation(3, derivation_prefix="m")

    def test_unknown_network(self):
        with pytest.raises(ConfigurationError):
            KeyDerivation(3, "dogecoin")

    def test_custom_prefix(self):
        kd = KeyDerivation(2, "mainnet", "m/45'")
        assert kd.recover(_PHRASE, 1).path == "m/45'/1"

    def test_derive_public_matches_recover(self):
        kd = KeyDerivation(3)
        signer = kd.recover(_PHRASE, 0)
        for i in range(3):
            public = kd.derive_public(signer.account_xpub, i)
            assert public.private_key is None
            assert public.public_key == kd.recover(_PHRASE, i).public_key

    def test_derive_public_rejects_malformed_xpub(self):
        with pytest.raises(ConfigurationError, match="extended key"):
            KeyDerivation(3).derive_public("tpubgarbage", 0)

    @pytest.mark.parametrize("strength", [0, 100, 512, "256"])
    def test_unsupported_strength(self, strength):
        with pytest.raises(ConfigurationError, match="mnemonic strength"):
            KeyDerivation(1, strength=strength)

    def test_concurrent_recovery(self):
        kd = KeyDerivation(4)
        expected = [kd.recover(_PHRASE, i).public_key for i in range(4)]
        with ThreadPoolExecutor(max_workers=4) as pool:
            results = list(pool.map(
                lambda i: kd.recover(_PHRASE, i % 4).public_key, range(16)))
        assert results == [expected[i % 4] for i in range(16)]
