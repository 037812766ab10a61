"""
m-of-n Bitcoin Multisig Wallet Engine
=====================================
- Canonical ``OP_m <keys…> OP_n OP_CHECKMULTISIG`` locking script with
  byte-lexicographically sorted keys (BIP-67 ordering)
- P2SH and native P2WSH addresses derived from the same script
- Unsigned spending drafts over mixed legacy (P2SH) and witness (P2WSH)
  inputs
- Threshold signing with signer authorization and wallet-scoped
  duplicate-signer tracking
- Finalization into a broadcast-ready raw transaction
- BIP-39 / BIP-32 signer key generation and recovery (see ``hd_keys``)

Dependencies:
    pip install coincurve bech32 base58 pycryptodome mnemonic bitcoinlib

Signing Model:
    Every signature commits to all inputs and all outputs (SIGHASH_ALL).
    Witness inputs use the BIP-143 digest, legacy P2SH inputs the
    original pre-segwit digest.  No other hash types are produced or
    accepted.

Signer Tracking:
    The set of signers that already contributed belongs to the wallet
    instance, not to a draft.  A signer that signed once cannot sign
    again through the same wallet, for any input of any draft, until
    ``reset_signers()`` is called.

Out of scope:
    Fee estimation, coin selection, broadcasting, persistence of backup
    phrases, hardware signers.
"""

from __future__ import annotations

import json
import logging
import struct
import threading
from base64 import b64decode, b64encode
from dataclasses import dataclass, field, replace
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Set, Tuple, Union

from coincurve import PrivateKey, PublicKey

from bitcoin_protocol import (
    MAX_MONEY, OP_0, OP_1, OP_16, OP_CHECKMULTISIG, SEQUENCE_FINAL, SEQUENCE_RBF,
    SIGHASH_ALL, BIP143Sighash, LegacySighash, Transaction, TxIn, TxOut,
    address_to_script, decode_script_int, get_network, is_p2wsh_script,
    iter_script, p2sh_address, p2sh_script, p2wsh_address, p2wsh_script,
    push_data, push_int,
)
from hd_keys import KeyDerivation, SignerKey
from multisig_errors import (
    AddressDerivationFailure, DraftFinalized, DuplicateSignature, EmptyInputSet,
    EmptyOutputSet, ExcessiveAmount, FatalEncodingError, FinalizationFailure,
    FundsError, InsufficientFunds, InvalidDestination, InvalidKeySet,
    InvalidSpendableOutput, InvalidThreshold, NegativeFee,
    NonPositiveOutputAmount, UnauthorizedSigner, VerificationFailed,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
from logging.handlers import RotatingFileHandler

log = logging.getLogger("multisig_wallet")
log.addHandler(logging.NullHandler())


def setup_logging(log_file: str = "multisig_wallet.log") -> None:
    """
    Configure production logging with rotating file + console.

    Call once at startup; safe to call multiple times (idempotent).
    """
    if getattr(setup_logging, "_done", False):
        return

    fmt = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    file_handler = RotatingFileHandler(
        log_file, maxBytes=10 * 1024 * 1024, backupCount=5,
    )
    file_handler.setFormatter(fmt)
    file_handler.setLevel(logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(fmt)
    console_handler.setLevel(logging.WARNING)

    log.addHandler(file_handler)
    log.addHandler(console_handler)
    log.setLevel(logging.INFO)

    setup_logging._done = True  # type: ignore[attr-defined]


def _short(public_key: bytes) -> str:
    return public_key.hex()[:16] + "..."


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _is_positive_int(value: Any) -> bool:
    return _is_int(value) and value > 0


# ============================================================
# CONFIGURATION
# ============================================================

@dataclass(frozen=True)
class WalletConfig:
    """
    Wallet-wide settings.

    ``derivation_prefix`` defaults to the BIP-48 P2WSH account of the
    network (``m/48'/<coin>'/0'/2'``); signer ``i`` lives at
    ``<prefix>/i``.
    """
    network: str = "testnet"
    derivation_prefix: Optional[str] = None
    mnemonic_strength: int = 256          # bits -> 24 words
    passphrase: str = field(default="", repr=False)
    enable_rbf: bool = True               # BIP-125 opt-in
    tx_version: int = 2
    locktime: int = 0


# ============================================================
# SCRIPT BUILDER
# ============================================================

MAX_PUBKEYS = 15                 # keeps the redeem script within one 520 B P2SH push
MAX_REDEEM_SCRIPT_SIZE = 520     # largest push a P2SH scriptSig can carry


@dataclass(frozen=True)
class MultisigPolicy:
    """m-of-n policy. ``public_keys`` is always in canonical (sorted) order."""
    m: int
    n: int
    public_keys: Tuple[bytes, ...]

    def __contains__(self, public_key: object) -> bool:
        return public_key in self.public_keys

    def key_position(self, public_key: bytes) -> int:
        return self.public_keys.index(public_key)


@dataclass(frozen=True)
class WalletAddresses:
    p2sh: str
    p2wsh: str

    def to_dict(self) -> Dict[str, str]:
        return {"p2sh": self.p2sh, "p2wsh": self.p2wsh}


def _is_compressed_point(key: Any) -> bool:
    if not isinstance(key, (bytes, bytearray)) or len(key) != 33:
        return False
    if key[0] not in (0x02, 0x03):
        return False
    try:
        PublicKey(bytes(key))
    except ValueError:
        return False
    return True


def build_policy(required_signatures: int, public_keys: Sequence[bytes]) -> MultisigPolicy:
    """
    Validate an m-of-n key set and sort it into canonical order.

    Sorting makes the script (and so every address) independent of the
    order in which callers supply the keys.
    """
    if not _is_positive_int(required_signatures):
        raise InvalidThreshold("Required signatures must be a positive integer")
    if not isinstance(public_keys, (list, tuple)) or len(public_keys) == 0:
        raise InvalidKeySet("Public keys array cannot be empty")
    if required_signatures > len(public_keys):
        raise InvalidThreshold(
            "Required signatures cannot exceed number of public keys"
        )

    for index, pubkey in enumerate(public_keys):
        if not _is_compressed_point(pubkey):
            raise InvalidKeySet(f"Invalid public key at index {index}")

    keys = [bytes(k) for k in public_keys]
    if len(set(keys)) != len(keys):
        raise InvalidKeySet("Public keys must be unique")
    if len(keys) > MAX_PUBKEYS:
        raise InvalidKeySet(
            f"At most {MAX_PUBKEYS} public keys are allowed, got {len(keys)}"
        )

    return MultisigPolicy(
        m=required_signatures,
        n=len(keys),
        public_keys=tuple(sorted(keys)),
    )


def build_script(policy: MultisigPolicy) -> bytes:
    """OP_m <k1> … <kn> OP_n OP_CHECKMULTISIG, keys in canonical order."""
    script = push_int(policy.m)
    for pubkey in policy.public_keys:
        script += push_data(pubkey)
    script += push_int(policy.n)
    script += bytes([OP_CHECKMULTISIG])
    return script


def derive_addresses(script: bytes, network: str = "testnet") -> WalletAddresses:
    """P2SH and P2WSH addresses for *script* on *network*."""
    get_network(network)
    if len(script) > MAX_REDEEM_SCRIPT_SIZE:
        raise AddressDerivationFailure(
            f"Redeem script is {len(script)} B; P2SH allows at most "
            f"{MAX_REDEEM_SCRIPT_SIZE} B"
        )
    try:
        return WalletAddresses(
            p2sh=p2sh_address(script, network),
            p2wsh=p2wsh_address(script, network),
        )
    except ValueError as exc:
        raise AddressDerivationFailure(f"Failed to generate addresses: {exc}") from exc


def _small_int(op: int, data: Optional[bytes]) -> int:
    if data is None:
        if OP_1 <= op <= OP_16:
            return op - OP_1 + 1
        raise ValueError(f"opcode 0x{op:02x} is not a number")
    return decode_script_int(data)


def parse_multisig_script(script: bytes) -> Tuple[int, List[bytes]]:
    """Decompile a bare multisig script into (m, keys). Raises ValueError."""
    try:
        chunks = list(iter_script(script))
    except (IndexError, struct.error) as exc:
        raise ValueError(f"Malformed script: {exc}") from exc

    if len(chunks) < 4 or chunks[-1] != (OP_CHECKMULTISIG, None):
        raise ValueError("Not an OP_CHECKMULTISIG script")
    m = _small_int(*chunks[0])
    n = _small_int(*chunks[-2])
    keys = [data for _, data in chunks[1:-2]]
    if any(k is None or not _is_compressed_point(k) for k in keys):
        raise ValueError("Multisig script contains a non-key element")
    if len(keys) != n or not 1 <= m <= n:
        raise ValueError(f"Inconsistent multisig counts: m={m} n={n} keys={len(keys)}")
    return m, keys  # type: ignore[return-value]


def is_multisig_script(script: bytes) -> bool:
    try:
        parse_multisig_script(script)
    except ValueError:
        return False
    return True


# ============================================================
# TRANSACTION DRAFT
# ============================================================

@dataclass(frozen=True)
class SpendableOutput:
    """A UTXO the wallet can spend. ``prior_tx`` is required for legacy outputs."""
    txid: str
    vout: int
    amount: int
    script_pubkey: bytes
    prior_tx: Optional[bytes] = field(default=None, repr=False)

    def __post_init__(self) -> None:
        try:
            if len(bytes.fromhex(self.txid)) != 32:
                raise ValueError
        except (TypeError, ValueError):
            raise InvalidSpendableOutput(
                f"txid must be 64 hex characters, got {self.txid!r}"
            ) from None
        if not _is_int(self.vout) or not 0 <= self.vout <= 0xFFFFFFFF:
            raise InvalidSpendableOutput(f"invalid output index {self.vout!r}")
        if not _is_int(self.amount) or self.amount < 0:
            raise InvalidSpendableOutput("amount cannot be negative")
        if self.amount > MAX_MONEY:
            raise InvalidSpendableOutput(
                f"amount {self.amount} exceeds the {MAX_MONEY} sat money supply"
            )
        if not isinstance(self.script_pubkey, bytes):
            raise InvalidSpendableOutput("script_pubkey must be bytes")

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SpendableOutput":
        prior = d.get("prior_tx")
        return cls(
            txid=d["txid"],
            vout=d["vout"],
            amount=d["amount"],
            script_pubkey=bytes.fromhex(d["scriptPubKey"]),
            prior_tx=bytes.fromhex(prior) if prior else None,
        )


@dataclass(frozen=True)
class DesiredOutput:
    address: str
    amount: int


@dataclass(frozen=True)
class LegacyInput:
    """P2SH input: signed with the legacy digest, needs the full prior tx."""
    prior_tx: bytes = field(repr=False)


@dataclass(frozen=True)
class WitnessInput:
    """P2WSH input: the BIP-143 digest commits to the spent amount."""
    script_pubkey: bytes
    amount: int


InputKind = Union[LegacyInput, WitnessInput]


@dataclass(frozen=True)
class DraftInput:
    txid: str
    vout: int
    amount: int
    sequence: int
    kind: InputKind
    locking_script: bytes = field(repr=False)

    @property
    def is_witness(self) -> bool:
        return isinstance(self.kind, WitnessInput)


@dataclass(frozen=True)
class DraftOutput:
    address: str
    amount: int
    script_pubkey: bytes


@dataclass(frozen=True)
class PartialSignature:
    public_key: bytes
    signature: bytes            # DER || sighash byte


@dataclass
class TransactionDraft:
    """
    Unsigned spend plus the partial signatures collected so far.

    ``partial_signatures`` maps input index to the contributions recorded
    for that input.  Only the SigningCoordinator appends to it.  Once
    ``final_tx`` is set the draft is terminal.
    """
    inputs: List[DraftInput]
    outputs: List[DraftOutput]
    fee: int = 0
    version: int = 2
    locktime: int = 0
    partial_signatures: Dict[int, List[PartialSignature]] = field(default_factory=dict)
    final_tx: Optional[bytes] = field(default=None, repr=False)

    @property
    def is_finalized(self) -> bool:
        return self.final_tx is not None

    @property
    def total_in(self) -> int:
        return sum(inp.amount for inp in self.inputs)

    @property
    def total_out(self) -> int:
        return sum(out.amount for out in self.outputs)

    def signers(self, input_index: int) -> List[bytes]:
        return [c.public_key for c in self.partial_signatures.get(input_index, [])]

    # ---- wire view ----------------------------------------------------
    def unsigned_transaction(self) -> Transaction:
        return Transaction(
            version=self.version,
            inputs=[
                TxIn(inp.txid, inp.vout, b"", inp.sequence)
                for inp in self.inputs
            ],
            outputs=[TxOut(out.amount, out.script_pubkey) for out in self.outputs],
            locktime=self.locktime,
        )

    def txid(self) -> str:
        """txid of the spend; signatures never change it."""
        return self.unsigned_transaction().txid()

    def signing_digest(self, input_index: int) -> bytes:
        """SIGHASH_ALL digest for *input_index* (BIP-143 or legacy)."""
        tx = self.unsigned_transaction()
        if not 0 <= input_index < len(self.inputs):
            raise IndexError(f"input index {input_index} out of range")
        inp = self.inputs[input_index]
        if isinstance(inp.kind, WitnessInput):
            return BIP143Sighash(tx, input_index).compute(
                inp.locking_script, inp.kind.amount, SIGHASH_ALL,
            )
        return LegacySighash(tx, input_index).compute(inp.locking_script, SIGHASH_ALL)

    # ---- serialisation ------------------------------------------------
    def to_base64(self) -> str:
        inputs = []
        for inp in self.inputs:
            entry: Dict[str, Any] = {
                "txid": inp.txid,
                "vout": inp.vout,
                "amount": inp.amount,
                "sequence": inp.sequence,
                "locking_script": inp.locking_script.hex(),
            }
            if isinstance(inp.kind, WitnessInput):
                entry["kind"] = "witness"
                entry["witness_utxo"] = {
                    "amount": inp.kind.amount,
                    "scriptPubKey": inp.kind.script_pubkey.hex(),
                }
            else:
                entry["kind"] = "legacy"
                entry["non_witness_utxo"] = inp.kind.prior_tx.hex()
            inputs.append(entry)

        blob = {
            "version": 1,
            "tx": {
                "version": self.version,
                "locktime": self.locktime,
                "inputs": inputs,
                "outputs": [
                    {
                        "address": out.address,
                        "amount": out.amount,
                        "scriptPubKey": out.script_pubkey.hex(),
                    }
                    for out in self.outputs
                ],
            },
            "fee": self.fee,
            "partial_sigs": {
                str(idx): [
                    {"pubkey": c.public_key.hex(), "sig": c.signature.hex()}
                    for c in contributions
                ]
                for idx, contributions in self.partial_signatures.items()
            },
            "final_tx": self.final_tx.hex() if self.final_tx else None,
        }
        return b64encode(json.dumps(blob, separators=(",", ":")).encode()).decode()

    @classmethod
    def from_base64(cls, b64: str) -> "TransactionDraft":
        d = json.loads(b64decode(b64))
        inputs = []
        for entry in d["tx"]["inputs"]:
            if entry["kind"] == "witness":
                kind: InputKind = WitnessInput(
                    script_pubkey=bytes.fromhex(entry["witness_utxo"]["scriptPubKey"]),
                    amount=entry["witness_utxo"]["amount"],
                )
            else:
                kind = LegacyInput(prior_tx=bytes.fromhex(entry["non_witness_utxo"]))
            inputs.append(DraftInput(
                txid=entry["txid"],
                vout=entry["vout"],
                amount=entry["amount"],
                sequence=entry["sequence"],
                kind=kind,
                locking_script=bytes.fromhex(entry["locking_script"]),
            ))
        final = d.get("final_tx")
        return cls(
            inputs=inputs,
            outputs=[
                DraftOutput(o["address"], o["amount"], bytes.fromhex(o["scriptPubKey"]))
                for o in d["tx"]["outputs"]
            ],
            fee=d.get("fee", 0),
            version=d["tx"]["version"],
            locktime=d["tx"].get("locktime", 0),
            partial_signatures={
                int(idx): [
                    PartialSignature(bytes.fromhex(c["pubkey"]), bytes.fromhex(c["sig"]))
                    for c in contributions
                ]
                for idx, contributions in d.get("partial_sigs", {}).items()
            },
            final_tx=bytes.fromhex(final) if final else None,
        )


# ============================================================
# TRANSACTION ASSEMBLER
# ============================================================

class TransactionAssembler:
    """Builds unsigned drafts that spend outputs locked by one multisig script."""

    def __init__(
        self,
        locking_script: bytes,
        network: str = "testnet",
        *,
        enable_rbf: bool = True,
        tx_version: int = 2,
        locktime: int = 0,
    ) -> None:
        self.locking_script = locking_script
        self.network = network
        # BIP-125: nSequence 0xfffffffd signals opt-in RBF
        self.sequence = SEQUENCE_RBF if enable_rbf else SEQUENCE_FINAL
        self.tx_version = tx_version
        self.locktime = locktime
        self._p2wsh_spk = p2wsh_script(locking_script)
        self._p2sh_spk = p2sh_script(locking_script)

    def assemble(
        self,
        inputs: Iterable[SpendableOutput],
        outputs: Iterable[DesiredOutput],
        fee: int,
    ) -> TransactionDraft:
        inputs = list(inputs)
        outputs = list(outputs)

        if not inputs:
            raise EmptyInputSet("UTXOs array cannot be empty")
        if not outputs:
            raise EmptyOutputSet("Outputs array cannot be empty")
        if not _is_int(fee):
            raise FundsError(f"Fee must be an integer amount of satoshis, got {fee!r}")
        if fee < 0:
            raise NegativeFee("Fee cannot be negative")
        if fee > MAX_MONEY:
            raise ExcessiveAmount(f"Fee {fee} exceeds the money supply")

        draft_inputs = self._resolve_inputs(inputs)
        draft_outputs = [self._resolve_output(out) for out in outputs]

        total_in = sum(inp.amount for inp in draft_inputs)
        total_out = sum(out.amount for out in draft_outputs)
        if total_out > MAX_MONEY:
            raise ExcessiveAmount(f"Outputs total {total_out} exceeds the money supply")
        if total_in < total_out + fee:
            log.warning("Assembly failed: inputs=%d < outputs=%d + fee=%d",
                        total_in, total_out, fee)
            raise InsufficientFunds(
                f"Insufficient funds for transaction: inputs ({total_in}) < "
                f"outputs ({total_out}) + fee ({fee})"
            )

        surplus = total_in - total_out - fee
        if surplus:
            log.warning("Draft leaves %d sats unallocated; they go to the miner", surplus)

        draft = TransactionDraft(
            inputs=draft_inputs,
            outputs=draft_outputs,
            fee=fee,
            version=self.tx_version,
            locktime=self.locktime,
        )
        log.info(
            "Draft assembled: %d inputs (%d witness), %d outputs, in=%d out=%d fee=%d",
            len(draft_inputs), sum(i.is_witness for i in draft_inputs),
            len(draft_outputs), total_in, total_out, fee,
        )
        return draft

    # ---- inputs -------------------------------------------------------
    def _resolve_inputs(self, utxos: List[SpendableOutput]) -> List[DraftInput]:
        seen: Set[Tuple[str, int]] = set()
        resolved: List[DraftInput] = []
        for utxo in utxos:
            if not isinstance(utxo, SpendableOutput):
                raise InvalidSpendableOutput(
                    f"Expected SpendableOutput, got {type(utxo).__name__}"
                )
            outpoint = (utxo.txid.lower(), utxo.vout)
            if outpoint in seen:
                raise InvalidSpendableOutput(
                    f"Outpoint {utxo.txid}:{utxo.vout} is spent twice"
                )
            seen.add(outpoint)
            resolved.append(self._resolve_input(utxo))
        return resolved

    def _resolve_input(self, utxo: SpendableOutput) -> DraftInput:
        if is_p2wsh_script(utxo.script_pubkey):
            if utxo.script_pubkey != self._p2wsh_spk:
                log.warning("Input %s:%d does not commit to this wallet's witness script",
                            utxo.txid[:16], utxo.vout)
            kind: InputKind = WitnessInput(utxo.script_pubkey, utxo.amount)
        else:
            if utxo.prior_tx is None:
                raise InvalidSpendableOutput(
                    f"Legacy input {utxo.txid}:{utxo.vout} requires the full prior "
                    f"transaction"
                )
            self._check_prior_tx(utxo)
            if utxo.script_pubkey != self._p2sh_spk:
                log.warning("Input %s:%d does not commit to this wallet's redeem script",
                            utxo.txid[:16], utxo.vout)
            kind = LegacyInput(utxo.prior_tx)

        return DraftInput(
            txid=utxo.txid.lower(),
            vout=utxo.vout,
            amount=utxo.amount,
            sequence=self.sequence,
            kind=kind,
            locking_script=self.locking_script,
        )

    @staticmethod
    def _check_prior_tx(utxo: SpendableOutput) -> None:
        try:
            prior = Transaction.parse(utxo.prior_tx)  # type: ignore[arg-type]
        except ValueError as exc:
            raise InvalidSpendableOutput(f"Unparseable prior transaction: {exc}") from exc
        if prior.txid() != utxo.txid.lower():
            raise InvalidSpendableOutput(
                f"Prior transaction hash {prior.txid()} does not match {utxo.txid}"
            )
        if utxo.vout >= len(prior.outputs):
            raise InvalidSpendableOutput(
                f"Prior transaction has no output {utxo.vout}"
            )
        spent = prior.outputs[utxo.vout]
        if spent.amount != utxo.amount or spent.script_pubkey != utxo.script_pubkey:
            raise InvalidSpendableOutput(
                f"Output {utxo.vout} of prior transaction does not match the UTXO"
            )

    # ---- outputs ------------------------------------------------------
    def _resolve_output(self, out: DesiredOutput) -> DraftOutput:
        try:
            script_pubkey = address_to_script(out.address, self.network)
        except ValueError as exc:
            raise InvalidDestination(f"Invalid address: {out.address}") from exc
        if not _is_positive_int(out.amount):
            raise NonPositiveOutputAmount("Output value must be positive")
        if out.amount > MAX_MONEY:
            raise ExcessiveAmount(f"Output value {out.amount} exceeds the money supply")
        return DraftOutput(out.address, out.amount, script_pubkey)


# ============================================================
# SIGNING COORDINATOR
# ============================================================

class SigningCoordinator:
    """
    Collects partial signatures for drafts of one wallet.

    Keeps the wallet-scoped set of signers that already contributed.
    Policy violations raise; a failure of the signing operation itself
    returns False so batch loops can carry on.
    """

    def __init__(self, policy: MultisigPolicy) -> None:
        self.policy = policy
        self._used_signers: Set[bytes] = set()
        self._lock = threading.Lock()

    @property
    def used_signers(self) -> FrozenSet[bytes]:
        with self._lock:
            return frozenset(self._used_signers)

    def submit_signature(
        self,
        draft: TransactionDraft,
        public_key: bytes,
        private_key: Optional[bytes],
        input_index: int,
    ) -> bool:
        if draft.is_finalized:
            raise DraftFinalized("Transaction is already finalized")

        public_key = bytes(public_key)
        if public_key not in self.policy:
            log.warning("Rejected unauthorized signer %s", _short(public_key))
            raise UnauthorizedSigner("Signer is not part of the multisig setup")

        with self._lock:
            if public_key in self._used_signers:
                log.warning("Rejected duplicate signer %s", _short(public_key))
                raise DuplicateSignature("This key has already signed")

            try:
                signature = self._sign(draft, public_key, private_key, input_index)
            except (ValueError, TypeError, IndexError, struct.error) as exc:
                log.error("Signing error on input %r: %s", input_index, exc)
                return False

            draft.partial_signatures.setdefault(input_index, []).append(
                PartialSignature(public_key, signature)
            )
            self._used_signers.add(public_key)

        log.info("Input %d signed by %s (%d/%d)",
                 input_index, _short(public_key),
                 len(draft.partial_signatures[input_index]), self.policy.m)
        return True

    @staticmethod
    def _sign(
        draft: TransactionDraft,
        public_key: bytes,
        private_key: Optional[bytes],
        input_index: int,
    ) -> bytes:
        if private_key is None:
            raise ValueError("Signer has no private key")
        key = PrivateKey(private_key)
        if key.public_key.format(compressed=True) != public_key:
            raise ValueError("Private key does not belong to the signer's public key")
        digest = draft.signing_digest(input_index)
        # libsecp256k1 emits low-S DER signatures
        return key.sign(digest, hasher=None) + bytes([SIGHASH_ALL])

    def reset_session(self) -> None:
        """Forget which signers contributed. Recorded signatures are untouched."""
        with self._lock:
            count = len(self._used_signers)
            self._used_signers.clear()
        log.info("Signer session reset (%d signers cleared)", count)


# ============================================================
# FINALIZER
# ============================================================

class Finalizer:
    """Checks the threshold and turns a signed draft into a raw transaction."""

    def __init__(self, policy: MultisigPolicy, locking_script: bytes) -> None:
        self.policy = policy
        self.locking_script = locking_script

    def verify(self, draft: TransactionDraft) -> bool:
        """
        True when every input carries at least m valid signatures from
        distinct signers of the policy. Read-only.
        """
        if not draft.inputs or not self._spends_own_script(draft):
            return False
        for index in range(len(draft.inputs)):
            contributions = draft.partial_signatures.get(index, [])
            if len(contributions) < self.policy.m:
                return False

            try:
                digest = draft.signing_digest(index)
            except (ValueError, IndexError, struct.error) as exc:
                log.warning("Cannot compute digest for input %d: %s", index, exc)
                return False
            signers: Set[bytes] = set()
            for contribution in contributions:
                if contribution.public_key in signers:
                    return False
                signers.add(contribution.public_key)
                if contribution.public_key not in self.policy:
                    return False
                if not self._signature_valid(contribution, digest):
                    log.warning("Invalid signature on input %d from %s",
                                index, _short(contribution.public_key))
                    return False
        return True

    def _spends_own_script(self, draft: TransactionDraft) -> bool:
        return all(inp.locking_script == self.locking_script for inp in draft.inputs)

    @staticmethod
    def _signature_valid(contribution: PartialSignature, digest: bytes) -> bool:
        sig = contribution.signature
        if len(sig) < 9 or sig[-1] != SIGHASH_ALL:
            return False
        try:
            return PublicKey(contribution.public_key).verify(sig[:-1], digest, hasher=None)
        except ValueError:
            return False

    def finalize(self, draft: TransactionDraft) -> bytes:
        """
        Emit the broadcast-ready transaction.

        Idempotent: a finalized draft returns the same bytes again.
        """
        if not self._spends_own_script(draft):
            raise VerificationFailed("Draft does not spend this wallet's script")
        if draft.final_tx is not None:
            return draft.final_tx

        if not self.verify(draft):
            raise VerificationFailed("Transaction verification failed")

        try:
            tx = draft.unsigned_transaction()
            for index, (draft_input, tx_in) in enumerate(zip(draft.inputs, tx.inputs)):
                signatures = self._ordered_signatures(draft, index)
                if draft_input.is_witness:
                    # CHECKMULTISIG pops one extra stack item
                    tx_in.witness = [b""] + signatures + [draft_input.locking_script]
                else:
                    tx_in.script_sig = (
                        bytes([OP_0])
                        + b"".join(push_data(sig) for sig in signatures)
                        + push_data(draft_input.locking_script)
                    )
            raw = tx.serialize()
        except (ValueError, struct.error) as exc:
            raise FinalizationFailure(f"Transaction finalization failed: {exc}") from exc

        draft.final_tx = raw
        log.info("Draft finalized: txid=%s, %d inputs, %d bytes raw TX",
                 tx.txid(), len(tx.inputs), len(raw))
        return raw

    def _ordered_signatures(self, draft: TransactionDraft, index: int) -> List[bytes]:
        """First m signatures, in the order their keys appear in the script."""
        contributions = sorted(
            draft.partial_signatures[index],
            key=lambda c: self.policy.key_position(c.public_key),
        )
        return [c.signature for c in contributions[:self.policy.m]]


# ============================================================
# USER-FACING API
# ============================================================

class MultisigWallet:
    """
    m-of-n multisig wallet.

    Policy, redeem script and addresses are computed once at construction
    and never change.  The wallet also owns the signer session used to
    reject duplicate signers.

    >>> signers = [SignerKey.random() for _ in range(3)]
    >>> wallet = MultisigWallet(2, [s.public_key for s in signers])
    >>> wallet.get_addresses().p2wsh.startswith("tb1q")
    True
    """

    def __init__(
        self,
        required_signatures: int,
        public_keys: Sequence[bytes],
        network: Optional[str] = None,
        *,
        config: Optional[WalletConfig] = None,
    ) -> None:
        config = config or WalletConfig()
        if network is not None:
            config = replace(config, network=network)
        get_network(config.network)

        self.config = config
        self.network = config.network
        self.policy = build_policy(required_signatures, public_keys)
        self.redeem_script = build_script(self.policy)
        self._check_script()
        self.addresses = derive_addresses(self.redeem_script, self.network)

        self._assembler = TransactionAssembler(
            self.redeem_script,
            self.network,
            enable_rbf=config.enable_rbf,
            tx_version=config.tx_version,
            locktime=config.locktime,
        )
        self._coordinator = SigningCoordinator(self.policy)
        self._finalizer = Finalizer(self.policy, self.redeem_script)
        self._derivation = KeyDerivation(
            self.policy.n,
            self.network,
            config.derivation_prefix,
            passphrase=config.passphrase,
            strength=config.mnemonic_strength,
        )
        self._signers: List[SignerKey] = []

        log.info("Wallet %d-of-%d on %s: p2sh=%s p2wsh=%s",
                 self.policy.m, self.policy.n, self.network,
                 self.addresses.p2sh, self.addresses.p2wsh)

    @classmethod
    def generate(
        cls,
        required_signatures: int,
        total_signers: int,
        config: Optional[WalletConfig] = None,
    ) -> "MultisigWallet":
        """Create n fresh signers (each with its own backup phrase) and the wallet."""
        valid = (
            _is_positive_int(required_signatures)
            and _is_positive_int(total_signers)
            and required_signatures <= total_signers
        )
        if not valid:
            raise InvalidThreshold(
                f"Invalid signature requirements: {required_signatures!r}-of-{total_signers!r}"
            )
        config = config or WalletConfig()
        derivation = KeyDerivation(
            total_signers,
            config.network,
            config.derivation_prefix,
            passphrase=config.passphrase,
            strength=config.mnemonic_strength,
        )
        signers = [derivation.generate(i) for i in range(total_signers)]
        wallet = cls(required_signatures, [s.public_key for s in signers], config=config)
        wallet._signers = signers
        return wallet

    def _check_script(self) -> None:
        """Decompile the built script and compare it with the policy."""
        try:
            m, keys = parse_multisig_script(self.redeem_script)
        except ValueError as exc:
            raise FatalEncodingError(f"Built script does not decompile: {exc}") from exc
        if m != self.policy.m or tuple(keys) != self.policy.public_keys:
            raise FatalEncodingError("Built script does not match the multisig policy")

    # ---- properties ---------------------------------------------------
    @property
    def m(self) -> int:
        return self.policy.m

    @property
    def n(self) -> int:
        return self.policy.n

    @property
    def public_keys(self) -> List[bytes]:
        return list(self.policy.public_keys)

    def is_signer(self, public_key: bytes) -> bool:
        return bytes(public_key) in self.policy

    # ---- script & addresses -------------------------------------------
    def get_addresses(self) -> WalletAddresses:
        return self.addresses

    def get_redeem_script(self) -> bytes:
        return self.redeem_script

    def get_script_pubkeys(self) -> Dict[str, bytes]:
        return {
            "p2sh": p2sh_script(self.redeem_script),
            "p2wsh": p2wsh_script(self.redeem_script),
        }

    # ---- signer keys --------------------------------------------------
    def get_signers(self) -> List[SignerKey]:
        return list(self._signers)

    def get_mnemonics(self) -> List[str]:
        return [s.mnemonic for s in self._signers]

    def get_derivation_paths(self) -> List[str]:
        return [s.path for s in self._signers]

    def restore_from_mnemonic(self, mnemonic: str, index: int) -> SignerKey:
        signer = self._derivation.recover(mnemonic, index)
        if not self.is_signer(signer.public_key):
            log.warning("Recovered key %s is not a signer of this wallet",
                        _short(signer.public_key))
        return signer

    # ---- transactions -------------------------------------------------
    def create_transaction(
        self,
        utxos: Iterable[SpendableOutput],
        outputs: Iterable[DesiredOutput],
        fee: int,
    ) -> TransactionDraft:
        return self._assembler.assemble(utxos, outputs, fee)

    def sign_transaction(
        self,
        draft: TransactionDraft,
        signer: SignerKey,
        input_index: int,
    ) -> bool:
        return self._coordinator.submit_signature(
            draft, signer.public_key, signer.private_key, input_index,
        )

    def verify_transaction(self, draft: TransactionDraft) -> bool:
        return self._finalizer.verify(draft)

    def finalize_transaction(self, draft: TransactionDraft) -> str:
        """Finalize and return the raw transaction as hex."""
        return self._finalizer.finalize(draft).hex()

    def reset_signers(self) -> None:
        self._coordinator.reset_session()

    @property
    def used_signers(self) -> FrozenSet[bytes]:
        return self._coordinator.used_signers


# ============================================================
# SELF-TEST / DEMO
# ============================================================

def _run_demo() -> None:
    """End-to-end 2-of-3 round trip on testnet."""
    setup_logging()
    logging.basicConfig(level=logging.INFO, format="%(message)s")

    separator = "=" * 60
    print(f"\n{separator}")
    print("  2-of-3 multisig round trip (testnet)")
    print(separator)

    wallet = MultisigWallet.generate(2, 3)
    addresses = wallet.get_addresses()
    print(f"  P2SH:   {addresses.p2sh}")
    print(f"  P2WSH:  {addresses.p2wsh}")
    for path in wallet.get_derivation_paths():
        print(f"  Signer path: {path}")

    utxo = SpendableOutput(
        txid="ab" * 32,
        vout=0,
        amount=100_000,
        script_pubkey=wallet.get_script_pubkeys()["p2wsh"],
    )
    dest = "tb1qw508d6qejxtdg4y5r3zarvary0c5xw7kxpjzsx"
    draft = wallet.create_transaction([utxo], [DesiredOutput(dest, 50_000)], 1_000)
    print(f"  Draft txid: {draft.txid()}")

    signers = wallet.get_signers()
    for signer in signers[:2]:
        ok = wallet.sign_transaction(draft, signer, 0)
        print(f"  Signed by {signer.path}: {ok}")

    if not wallet.verify_transaction(draft):
        raise SystemExit("FATAL: verification failed after 2 signatures")
    raw_hex = wallet.finalize_transaction(draft)
    print(f"  Raw TX: {len(raw_hex) // 2} bytes")

    recovered = wallet.restore_from_mnemonic(signers[0].mnemonic, 0)
    if recovered.public_key != signers[0].public_key:
        raise SystemExit("FATAL: mnemonic recovery mismatch")
    print("  Mnemonic recovery: PASS")

    print(f"\n{separator}")
    print("  ALL SELF-TESTS PASSED")
    print(f"{separator}\n")


if __name__ == "__main__":
    _run_demo()
