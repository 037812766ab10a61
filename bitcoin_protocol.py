"""
Bitcoin wire-level primitives for the multisig engine.

- CompactSize, script pushes and a minimal script decompiler
- HASH160 / SHA-256d
- Network parameters and P2SH / P2WSH address encoding (base58check, BIP-173)
- Transaction (de)serialization with BIP-144 witness support
- Signature digests: legacy (pre-segwit) and BIP-143 (segwit v0)

Reference: https://github.com/bitcoin/bips/blob/master/bip-0143.mediawiki
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Iterator, List, Optional, Tuple

import base58
from bech32 import decode as _bech32_decode, encode as _bech32_encode
from Crypto.Hash import RIPEMD160

from multisig_errors import ConfigurationError


# ============================================================
# NETWORK PARAMETERS
# ============================================================

@dataclass(frozen=True)
class NetworkParams:
    name: str
    p2pkh_version: int
    p2sh_version: int
    bech32_hrp: str
    xpub_version: bytes
    xprv_version: bytes
    coin_type: int


NETWORKS = {
    "mainnet": NetworkParams(
        "mainnet", 0x00, 0x05, "bc",
        bytes.fromhex("0488b21e"), bytes.fromhex("0488ade4"), 0,
    ),
    "testnet": NetworkParams(
        "testnet", 0x6F, 0xC4, "tb",
        bytes.fromhex("043587cf"), bytes.fromhex("04358394"), 1,
    ),
    "signet": NetworkParams(
        "signet", 0x6F, 0xC4, "tb",
        bytes.fromhex("043587cf"), bytes.fromhex("04358394"), 1,
    ),
    "regtest": NetworkParams(
        "regtest", 0x6F, 0xC4, "bcrt",
        bytes.fromhex("043587cf"), bytes.fromhex("04358394"), 1,
    ),
}


def get_network(network: str) -> NetworkParams:
    """Resolve a network name ("mainnet", "testnet", ...) to its parameters."""
    try:
        return NETWORKS[network]
    except KeyError:
        raise ConfigurationError(
            f"Unknown network {network!r}; expected one of {sorted(NETWORKS)}"
        ) from None


# ============================================================
# ENCODING HELPERS
# ============================================================

def compact_size(n: int) -> bytes:
    """Bitcoin CompactSize encoding."""
    if n < 0xfd:
        return struct.pack("<B", n)
    elif n <= 0xffff:
        return b'\xfd' + struct.pack("<H", n)
    elif n <= 0xffffffff:
        return b'\xfe' + struct.pack("<I", n)
    else:
        return b'\xff' + struct.pack("<Q", n)


def read_compact_size(data: bytes, pos: int) -> Tuple[int, int]:
    """Decode a CompactSize at *pos*. Returns (value, new_pos)."""
    prefix = data[pos]
    pos += 1
    if prefix < 0xfd:
        return prefix, pos
    fmt = {0xfd: "<H", 0xfe: "<I", 0xff: "<Q"}[prefix]
    value = struct.unpack_from(fmt, data, pos)[0]
    return value, pos + struct.calcsize(fmt)


def var_bytes(data: bytes) -> bytes:
    """Length-prefixed byte string."""
    return compact_size(len(data)) + data


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def sha256d(data: bytes) -> bytes:
    """SHA-256(SHA-256(data))"""
    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD-160(SHA-256(data))"""
    return RIPEMD160.new(sha256(data)).digest()


# ============================================================
# SCRIPT
# ============================================================

OP_0 = 0x00
OP_PUSHDATA1 = 0x4c
OP_PUSHDATA2 = 0x4d
OP_PUSHDATA4 = 0x4e
OP_1NEGATE = 0x4f
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xa9
OP_CHECKSIG = 0xac
OP_CHECKMULTISIG = 0xae

MAX_SCRIPT_ELEMENT_SIZE = 520


def push_data(data: bytes) -> bytes:
    """Minimal push of *data* (direct push, PUSHDATA1 or PUSHDATA2)."""
    n = len(data)
    if n < OP_PUSHDATA1:
        return bytes([n]) + data
    if n <= 0xff:
        return bytes([OP_PUSHDATA1, n]) + data
    if n <= 0xffff:
        return bytes([OP_PUSHDATA2]) + struct.pack("<H", n) + data
    raise ValueError(f"push of {n} bytes exceeds PUSHDATA2")


def push_int(n: int) -> bytes:
    """Minimal script-number push: OP_0, OP_1..OP_16, or a minimal scriptnum."""
    if n == 0:
        return bytes([OP_0])
    if 1 <= n <= 16:
        return bytes([OP_1 + n - 1])
    if n == -1:
        return bytes([OP_1NEGATE])
    negative = n < 0
    value = abs(n)
    out = bytearray()
    while value:
        out.append(value & 0xff)
        value >>= 8
    if out[-1] & 0x80:
        out.append(0x80 if negative else 0x00)
    elif negative:
        out[-1] |= 0x80
    return push_data(bytes(out))


def decode_script_int(data: bytes) -> int:
    """Inverse of the scriptnum encoding used by ``push_int``."""
    if not data:
        return 0
    value = int.from_bytes(data, "little")
    if data[-1] & 0x80:
        return -(value & ~(0x80 << (8 * (len(data) - 1))))
    return value


def iter_script(script: bytes) -> Iterator[Tuple[int, Optional[bytes]]]:
    """
    Decompile *script* into (opcode, pushed_data) pairs.

    ``pushed_data`` is None for non-push opcodes. Raises ValueError on a
    truncated push.
    """
    pos = 0
    while pos < len(script):
        op = script[pos]
        pos += 1
        if op == OP_0 or op > OP_PUSHDATA4:
            yield op, (b"" if op == OP_0 else None)
            continue
        if op < OP_PUSHDATA1:
            size = op
        elif op == OP_PUSHDATA1:
            size = script[pos]
            pos += 1
        elif op == OP_PUSHDATA2:
            size = struct.unpack_from("<H", script, pos)[0]
            pos += 2
        else:
            size = struct.unpack_from("<I", script, pos)[0]
            pos += 4
        if pos + size > len(script):
            raise ValueError("script push runs past end of script")
        yield op, script[pos:pos + size]
        pos += size


def is_p2wsh_script(script_pubkey: bytes) -> bool:
    """OP_0 <32-byte script hash>"""
    return (
        len(script_pubkey) == 34
        and script_pubkey[0] == OP_0
        and script_pubkey[1] == 0x20
    )


def p2sh_script(redeem_script: bytes) -> bytes:
    """OP_HASH160 <hash160(redeem)> OP_EQUAL"""
    return bytes([OP_HASH160, 0x14]) + hash160(redeem_script) + bytes([OP_EQUAL])


def p2wsh_script(witness_script: bytes) -> bytes:
    """OP_0 <sha256(witness_script)>"""
    return bytes([OP_0, 0x20]) + sha256(witness_script)


# ============================================================
# ADDRESSES
# ============================================================

def p2sh_address(redeem_script: bytes, network: str = "mainnet") -> str:
    """Base58check P2SH address (3... / 2...)."""
    params = get_network(network)
    payload = bytes([params.p2sh_version]) + hash160(redeem_script)
    return base58.b58encode_check(payload).decode()


def p2wsh_address(witness_script: bytes, network: str = "mainnet") -> str:
    """BIP-173 bech32 P2WSH address (bc1q... / tb1q...)."""
    params = get_network(network)
    addr = _bech32_encode(params.bech32_hrp, 0, list(sha256(witness_script)))
    if addr is None:
        raise ValueError("Bech32 encoding failed")
    return addr


def address_to_script(address: str, network: str = "mainnet") -> bytes:
    """
    Decode *address* for *network* into its scriptPubKey.

    Supports base58check P2PKH / P2SH and bech32/bech32m segwit
    addresses. Raises ValueError for anything malformed or belonging to
    another network.
    """
    params = get_network(network)
    if not isinstance(address, str) or not address:
        raise ValueError(f"Invalid address: {address!r}")

    if address.lower().startswith(params.bech32_hrp + "1"):
        ver, prog = _bech32_decode(params.bech32_hrp, address)
        if ver is None or prog is None:
            raise ValueError(f"Invalid bech32 address: {address}")
        version_op = OP_0 if ver == 0 else OP_1 + ver - 1
        return bytes([version_op, len(prog)]) + bytes(prog)

    try:
        payload = base58.b58decode_check(address)
    except ValueError as exc:
        raise ValueError(f"Invalid base58 address: {address}") from exc
    if len(payload) != 21:
        raise ValueError(f"Invalid base58 payload length: {len(payload)}")
    version, digest = payload[0], payload[1:]
    if version == params.p2pkh_version:
        return (bytes([OP_DUP, OP_HASH160, 0x14]) + digest
                + bytes([OP_EQUALVERIFY, OP_CHECKSIG]))
    if version == params.p2sh_version:
        return bytes([OP_HASH160, 0x14]) + digest + bytes([OP_EQUAL])
    raise ValueError(
        f"Address version 0x{version:02x} is not valid on {params.name}"
    )


def is_valid_address(address: str, network: str = "mainnet") -> bool:
    try:
        address_to_script(address, network)
    except ValueError:
        return False
    return True


# ============================================================
# TRANSACTIONS
# ============================================================

SEQUENCE_FINAL = 0xFFFFFFFF
SEQUENCE_RBF = 0xFFFFFFFD
MAX_MONEY = 21_000_000 * 100_000_000     # satoshis


@dataclass
class TxIn:
    txid: str                  # display (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = SEQUENCE_FINAL
    witness: List[bytes] = field(default_factory=list)

    def outpoint(self) -> bytes:
        return bytes.fromhex(self.txid)[::-1] + struct.pack("<I", self.vout)


@dataclass
class TxOut:
    amount: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.amount) + var_bytes(self.script_pubkey)


@dataclass
class Transaction:
    version: int = 2
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        """Wire encoding; BIP-144 marker/flag only when a witness is present."""
        segwit = include_witness and self.has_witness
        raw = struct.pack("<I", self.version)
        if segwit:
            raw += b"\x00\x01"
        raw += compact_size(len(self.inputs))
        for inp in self.inputs:
            raw += inp.outpoint()
            raw += var_bytes(inp.script_sig)
            raw += struct.pack("<I", inp.sequence)
        raw += compact_size(len(self.outputs))
        for out in self.outputs:
            raw += out.serialize()
        if segwit:
            for inp in self.inputs:
                raw += compact_size(len(inp.witness))
                for item in inp.witness:
                    raw += var_bytes(item)
        raw += struct.pack("<I", self.locktime)
        return raw

    def txid(self) -> str:
        """Display-order txid (hash of the non-witness serialization)."""
        return sha256d(self.serialize(include_witness=False))[::-1].hex()

    @classmethod
    def parse(cls, raw: bytes) -> "Transaction":
        """Parse a legacy or BIP-144 serialized transaction."""
        try:
            tx, pos = cls._parse(raw)
        except (IndexError, struct.error) as exc:
            raise ValueError(f"Truncated transaction: {exc}") from exc
        if pos != len(raw):
            raise ValueError(f"{len(raw) - pos} trailing bytes after transaction")
        return tx

    @classmethod
    def _parse(cls, raw: bytes) -> Tuple["Transaction", int]:
        def take(pos: int, n: int) -> Tuple[bytes, int]:
            if pos + n > len(raw):
                raise ValueError("Truncated transaction")
            return raw[pos:pos + n], pos + n

        pos = 0
        version = struct.unpack_from("<I", raw, pos)[0]
        pos += 4
        segwit = raw[pos:pos + 2] == b"\x00\x01"
        if segwit:
            pos += 2

        inputs: List[TxIn] = []
        n_in, pos = read_compact_size(raw, pos)
        for _ in range(n_in):
            txid_le, pos = take(pos, 32)
            vout = struct.unpack_from("<I", raw, pos)[0]
            pos += 4
            script_len, pos = read_compact_size(raw, pos)
            script_sig, pos = take(pos, script_len)
            sequence = struct.unpack_from("<I", raw, pos)[0]
            pos += 4
            inputs.append(TxIn(txid_le[::-1].hex(), vout, script_sig, sequence))

        outputs: List[TxOut] = []
        n_out, pos = read_compact_size(raw, pos)
        for _ in range(n_out):
            amount = struct.unpack_from("<q", raw, pos)[0]
            pos += 8
            spk_len, pos = read_compact_size(raw, pos)
            spk, pos = take(pos, spk_len)
            outputs.append(TxOut(amount, spk))

        if segwit:
            for inp in inputs:
                n_items, pos = read_compact_size(raw, pos)
                for _ in range(n_items):
                    item_len, pos = read_compact_size(raw, pos)
                    item, pos = take(pos, item_len)
                    inp.witness.append(item)

        locktime = struct.unpack_from("<I", raw, pos)[0]
        pos += 4
        return cls(version, inputs, outputs, locktime), pos


# ============================================================
# SIGNATURE DIGESTS
# ============================================================

SIGHASH_ALL = 0x01


class LegacySighash:
    """Pre-segwit signature hash (P2SH inputs). SIGHASH_ALL only."""

    def __init__(self, tx: Transaction, input_index: int):
        if not 0 <= input_index < len(tx.inputs):
            raise IndexError(f"input index {input_index} out of range")
        self.tx = tx
        self.input_index = input_index

    def compute(self, script_code: bytes, hash_type: int = SIGHASH_ALL) -> bytes:
        if hash_type != SIGHASH_ALL:
            raise ValueError(f"Unsupported hash type 0x{hash_type:02x}")
        stripped = Transaction(
            version=self.tx.version,
            inputs=[
                TxIn(
                    inp.txid, inp.vout,
                    script_code if idx == self.input_index else b"",
                    inp.sequence,
                )
                for idx, inp in enumerate(self.tx.inputs)
            ],
            outputs=list(self.tx.outputs),
            locktime=self.tx.locktime,
        )
        preimage = stripped.serialize(include_witness=False)
        preimage += struct.pack("<I", hash_type)
        return sha256d(preimage)


class BIP143Sighash:
    """Segwit v0 signature hash (P2WSH inputs). SIGHASH_ALL only."""

    def __init__(self, tx: Transaction, input_index: int):
        if not 0 <= input_index < len(tx.inputs):
            raise IndexError(f"input index {input_index} out of range")
        self.tx = tx
        self.input_index = input_index

    def compute(
        self,
        script_code: bytes,
        amount: int,
        hash_type: int = SIGHASH_ALL,
    ) -> bytes:
        if hash_type != SIGHASH_ALL:
            raise ValueError(f"Unsupported hash type 0x{hash_type:02x}")
        inp = self.tx.inputs[self.input_index]

        msg = bytearray()
        msg += struct.pack("<I", self.tx.version)
        msg += self._hash_prevouts()
        msg += self._hash_sequences()
        msg += inp.outpoint()
        msg += var_bytes(script_code)
        msg += struct.pack("<q", amount)
        msg += struct.pack("<I", inp.sequence)
        msg += self._hash_outputs()
        msg += struct.pack("<I", self.tx.locktime)
        msg += struct.pack("<I", hash_type)
        return sha256d(bytes(msg))

    def _hash_prevouts(self) -> bytes:
        return sha256d(b"".join(inp.outpoint() for inp in self.tx.inputs))

    def _hash_sequences(self) -> bytes:
        return sha256d(b"".join(
            struct.pack("<I", inp.sequence) for inp in self.tx.inputs
        ))

    def _hash_outputs(self) -> bytes:
        return sha256d(b"".join(out.serialize() for out in self.tx.outputs))
