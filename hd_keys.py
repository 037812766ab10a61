"""
Hierarchical-deterministic signer keys (BIP-39 + BIP-32).

Each signer of a multisig policy gets its own 24-word backup phrase.
The phrase is stretched into a seed (PBKDF2, 2048 rounds), the seed
into a BIP-32 master key, and the master key is walked down a fixed
``prefix/index`` path. The prefix is fully hardened, so a leaked child
public key together with a parent private key of one signer cannot be
used to reach another signer's keys.

BIP-32 arithmetic and extended key encoding come from bitcoinlib's
``HDKey``; the phrase and seed come from the reference ``mnemonic``
package.

Default prefix is the BIP-48 P2WSH multisig account::

    m/48'/<coin>'/0'/2'/<index>

Everything here is re-entrant: no module or instance state is mutated
after construction, so several derivations may run concurrently.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from bitcoinlib.encoding import EncodingError
from bitcoinlib.keys import BKeyError, HDKey
from coincurve import PrivateKey
from mnemonic import Mnemonic

from bitcoin_protocol import get_network
from multisig_errors import (
    ConfigurationError, InvalidBackupPhrase, InvalidIndex, InvalidPath,
)

log = logging.getLogger("multisig_wallet.hd_keys")
log.addHandler(logging.NullHandler())

HARDENED_OFFSET = 0x80000000
_HARDENED_MARKERS = ("'", "h", "H")
MNEMONIC_STRENGTHS = (128, 160, 192, 224, 256)

_WORDLIST = Mnemonic("english")


# ============================================================
# PATHS
# ============================================================

@dataclass(frozen=True)
class PathSegment:
    index: int
    hardened: bool

    @property
    def child_number(self) -> int:
        return self.index + HARDENED_OFFSET if self.hardened else self.index

    def __str__(self) -> str:
        return f"{self.index}'" if self.hardened else str(self.index)


def parse_path(path: str) -> Tuple[PathSegment, ...]:
    """Parse ``m/48'/0'/0'/2'/0`` into segments. Raises InvalidPath."""
    if not isinstance(path, str):
        raise InvalidPath(f"Derivation path must be a string, got {type(path).__name__}")
    parts = path.strip().split("/")
    if parts[0] != "m":
        raise InvalidPath(f"Derivation path must start at 'm': {path!r}")

    segments: List[PathSegment] = []
    for raw in parts[1:]:
        hardened = raw[-1:] in _HARDENED_MARKERS
        digits = raw[:-1] if hardened else raw
        if not (digits.isascii() and digits.isdigit()):
            raise InvalidPath(f"Bad path segment {raw!r} in {path!r}")
        index = int(digits)
        if index >= HARDENED_OFFSET:
            raise InvalidPath(f"Path index {index} out of range in {path!r}")
        segments.append(PathSegment(index, hardened))
    return tuple(segments)


def format_path(segments: Sequence[PathSegment]) -> str:
    return "/".join(["m"] + [str(s) for s in segments])


def validate_path(path: str) -> bool:
    """
    True if *path* is a well-formed signer path.

    Every segment except the final (signer index) leaf must be hardened,
    and there must be at least one segment.
    """
    try:
        segments = parse_path(path)
    except InvalidPath:
        return False
    if not segments:
        return False
    return all(s.hardened for s in segments[:-1])


# ============================================================
# BIP-32 NODES (bitcoinlib HDKey)
# ============================================================

def _hd_network(network: str) -> str:
    """bitcoinlib network whose extended key versions match *network*."""
    return "bitcoin" if get_network(network).coin_type == 0 else "testnet"


def master_node(seed: bytes, network: str = "mainnet") -> HDKey:
    """BIP-32 master node for a BIP-39 seed."""
    try:
        return HDKey.from_seed(seed, network=_hd_network(network), witness_type="legacy")
    except BKeyError as exc:
        raise ConfigurationError(f"Seed does not yield a valid master key: {exc}") from exc


def derive_node(node: HDKey, segments: Sequence[PathSegment]) -> HDKey:
    """Walk *segments* down from *node*; public nodes can only take normal steps."""
    for segment in segments:
        try:
            if segment.hardened:
                node = node.child_private(segment.index, hardened=True)
            elif node.is_private:
                node = node.child_private(segment.index)
            else:
                node = node.child_public(segment.index)
        except BKeyError as exc:
            raise InvalidPath(f"Cannot derive {segment} from this node: {exc}") from exc
    return node


def export_xpub(node: HDKey) -> str:
    """Plain BIP-32 xpub / tpub encoding (no SLIP-132 prefixes)."""
    return node.wif_public(witness_type="legacy", multisig=False)


def import_xpub(encoded: str, network: str = "mainnet") -> HDKey:
    """Parse an extended public key for *network*. Raises ConfigurationError."""
    if not isinstance(encoded, str) or not encoded:
        raise ConfigurationError(f"Extended key must be a non-empty string, got {encoded!r}")
    try:
        node = HDKey(encoded, network=_hd_network(network))
    except (BKeyError, EncodingError, ValueError, TypeError) as exc:
        raise ConfigurationError(f"Invalid extended key: {exc}") from exc
    return node.public() if node.is_private else node


# ============================================================
# SIGNER KEY
# ============================================================

@dataclass(frozen=True)
class SignerKey:
    """
    Key material of a single signer.

    ``mnemonic`` and ``path`` are empty for ad-hoc keys that were not
    produced by a ``KeyDerivation``. ``private_key`` is None after a
    public-only reconstruction.
    """
    public_key: bytes
    private_key: Optional[bytes] = field(default=None, repr=False)
    mnemonic: str = field(default="", repr=False)
    path: str = ""
    account_xpub: str = ""

    def __post_init__(self) -> None:
        if len(self.public_key) != 33:
            raise ValueError(
                f"public key must be 33 B compressed, got {len(self.public_key)}"
            )
        if self.private_key is not None:
            derived = PrivateKey(self.private_key).public_key.format(compressed=True)
            if derived != self.public_key:
                raise ValueError("private key does not match public key")

    @property
    def words(self) -> List[str]:
        return self.mnemonic.split()

    @property
    def segments(self) -> Tuple[PathSegment, ...]:
        return parse_path(self.path) if self.path else ()

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    def public_only(self) -> "SignerKey":
        """Copy without private material (and without the backup phrase)."""
        return replace(self, private_key=None, mnemonic="")

    # ---- ad-hoc keys --------------------------------------------------
    @classmethod
    def from_private_key(cls, secret: bytes) -> "SignerKey":
        key = PrivateKey(secret)
        return cls(
            public_key=key.public_key.format(compressed=True),
            private_key=key.secret,
        )

    @classmethod
    def random(cls) -> "SignerKey":
        return cls.from_private_key(secrets.token_bytes(32))

    # ---- serialisation -------------------------------------------------
    def to_dict(self, include_private: bool = False) -> Dict[str, Any]:
        d: Dict[str, Any] = {
            "pk": self.public_key.hex(),
            "path": self.path,
            "account_xpub": self.account_xpub,
        }
        if include_private:
            d["sk"] = self.private_key.hex() if self.private_key else None
            d["mnemonic"] = self.mnemonic
        return d

    @classmethod
    def from_dict(cls, d: Dict[str, Any]) -> "SignerKey":
        sk = d.get("sk")
        return cls(
            public_key=bytes.fromhex(d["pk"]),
            private_key=bytes.fromhex(sk) if sk else None,
            mnemonic=d.get("mnemonic", ""),
            path=d.get("path", ""),
            account_xpub=d.get("account_xpub", ""),
        )


# ============================================================
# KEY DERIVATION
# ============================================================

def _is_positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value > 0


def default_prefix(network: str) -> str:
    """BIP-48 P2WSH multisig account prefix for *network*."""
    return f"m/48'/{get_network(network).coin_type}'/0'/2'"


class KeyDerivation:
    """
    Generates and recovers the keys of ``total_signers`` signers.

    >>> kd = KeyDerivation(3, "testnet")
    >>> signer = kd.generate(0)
    >>> kd.recover(signer.mnemonic, 0).public_key == signer.public_key
    True
    """

    def __init__(
        self,
        total_signers: int,
        network: str = "testnet",
        derivation_prefix: Optional[str] = None,
        *,
        passphrase: str = "",
        strength: int = 256,
    ) -> None:
        if not _is_positive_int(total_signers):
            raise ConfigurationError(
                f"Signer count must be a positive integer, got {total_signers!r}"
            )
        if strength not in MNEMONIC_STRENGTHS:
            raise ConfigurationError(
                f"Unsupported mnemonic strength {strength!r}; expected one of {MNEMONIC_STRENGTHS}"
            )
        get_network(network)

        self.total_signers = total_signers
        self.network = network
        self.passphrase = passphrase
        self.strength = strength
        self.prefix = derivation_prefix or default_prefix(network)

        prefix_segments = parse_path(self.prefix)
        if not prefix_segments or not all(s.hardened for s in prefix_segments):
            raise InvalidPath(
                f"Derivation prefix must be non-empty and fully hardened: {self.prefix!r}"
            )
        self._prefix_segments = prefix_segments

    # ---- paths --------------------------------------------------------
    def path_for(self, index: int) -> str:
        self._check_index(index)
        return f"{self.prefix}/{index}"

    def _check_index(self, index: int) -> None:
        valid = (
            isinstance(index, int)
            and not isinstance(index, bool)
            and 0 <= index < self.total_signers
        )
        if not valid:
            raise InvalidIndex(
                f"Invalid signer index {index!r}: expected 0..{self.total_signers - 1}"
            )

    # ---- generate / recover -------------------------------------------
    def generate(self, index: int) -> SignerKey:
        """Fresh entropy -> backup phrase -> signer key at ``prefix/index``."""
        self._check_index(index)
        entropy = secrets.token_bytes(self.strength // 8)
        phrase = _WORDLIST.to_mnemonic(entropy)
        key = self._derive(phrase, index)
        log.info("Generated signer %d at %s (pk=%s...)",
                 index, key.path, key.public_key.hex()[:16])
        return key

    def recover(self, phrase: Union[str, Sequence[str]], index: int) -> SignerKey:
        """Re-derive the signer key at *index* from its backup phrase."""
        if not isinstance(phrase, str):
            phrase = " ".join(phrase)
        phrase = " ".join(phrase.split())
        if not phrase or not _WORDLIST.check(phrase):
            log.warning("Rejected backup phrase for signer %r: checksum failed", index)
            raise InvalidBackupPhrase("Invalid mnemonic: checksum or word list mismatch")
        self._check_index(index)
        key = self._derive(phrase, index)
        log.info("Recovered signer %d at %s", index, key.path)
        return key

    def derive_public(self, account_xpub: str, index: int) -> SignerKey:
        """Public-only reconstruction of signer *index* from its account xpub."""
        self._check_index(index)
        account = import_xpub(account_xpub, self.network)
        child = derive_node(account, [PathSegment(index, hardened=False)])
        return SignerKey(
            public_key=child.public_byte,
            path=self.path_for(index),
            account_xpub=account_xpub,
        )

    def _derive(self, phrase: str, index: int) -> SignerKey:
        seed = Mnemonic.to_seed(phrase, passphrase=self.passphrase)
        account = derive_node(master_node(seed, self.network), self._prefix_segments)
        leaf = derive_node(account, [PathSegment(index, hardened=False)])
        return SignerKey(
            public_key=leaf.public_byte,
            private_key=leaf.private_byte,
            mnemonic=phrase,
            path=self.path_for(index),
            account_xpub=export_xpub(account),
        )
