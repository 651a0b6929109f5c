import base64
import json
import logging
import os
import secrets
import struct
from dataclasses import dataclass
from pathlib import Path

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec, x25519

# See https://www.rfc-editor.org/rfc/rfc9180.html#section-7
KEM_IDS = {
    "X25519HkdfSha256": 0x0020,
    "P256HkdfSha256": 0x0010,
}
KDF_IDS = {"HkdfSha256": 0x0001}
AEAD_IDS = {"Aes128Gcm": 0x0001}

# Names accepted on the command line / in the job config, as dapf spells them.
KEM_ALGORITHMS = {
    "x25519_hkdf_sha256": "X25519HkdfSha256",
    "p256_hkdf_sha256": "P256HkdfSha256",
}


def encode_base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def decode_base64url(data: str) -> bytes:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded)


@dataclass(frozen=True)
class HpkeReceiverConfig:
    """An HPKE key configuration plus its private key.

    The JSON form matches what daphne's test routes accept for
    ``add_hpke_config`` and what ``dapf decode`` reads via
    ``--hpke-config-path``.
    """

    config_id: int
    kem_id: str
    kdf_id: str
    aead_id: str
    public_key: bytes
    private_key: bytes

    @classmethod
    def from_dict(cls, d: dict) -> "HpkeReceiverConfig":
        config = d["config"]
        receiver = cls(
            config_id=int(config["id"]),
            kem_id=config["kem_id"],
            kdf_id=config["kdf_id"],
            aead_id=config["aead_id"],
            public_key=bytes.fromhex(config["public_key"]),
            private_key=bytes.fromhex(d["private_key"]),
        )
        receiver.encoded()
        return receiver

    def to_dict(self) -> dict:
        return {
            "config": {
                "id": self.config_id,
                "kem_id": self.kem_id,
                "kdf_id": self.kdf_id,
                "aead_id": self.aead_id,
                "public_key": self.public_key.hex(),
            },
            "private_key": self.private_key.hex(),
        }

    def encoded(self) -> bytes:
        """Encode the public half as a DAP ``HpkeConfig``."""
        if not (0 <= self.config_id <= 255):
            raise ValueError("config_id must be between 0 and 255")
        if len(self.public_key) > 65535:
            raise ValueError("public_key too long")
        for name, known in (
            (self.kem_id, KEM_IDS),
            (self.kdf_id, KDF_IDS),
            (self.aead_id, AEAD_IDS),
        ):
            if name not in known:
                raise ValueError(f"Unsupported HPKE algorithm: {name}")

        # See https://ietf-wg-ppm.github.io/draft-ietf-ppm-dap/draft-ietf-ppm-dap.html#section-4.5.1-4
        # Pack big endian, byte, 2 bytes x 3
        encoded = struct.pack(
            "!BHHH",
            self.config_id,
            KEM_IDS[self.kem_id],
            KDF_IDS[self.kdf_id],
            AEAD_IDS[self.aead_id],
        )
        # Pack big endian, 2 bytes
        encoded += struct.pack("!H", len(self.public_key)) + self.public_key
        return encoded

    def to_base64url(self) -> str:
        return encode_base64url(self.encoded())

    def __repr__(self):
        return (
            f"HpkeReceiverConfig(config_id={self.config_id}, kem_id='{self.kem_id}', "
            f"kdf_id='{self.kdf_id}', aead_id='{self.aead_id}', private_key='redacted')"
        )

    __str__ = __repr__


def generate_receiver_config(
    config_id: int | None = None, kem_alg: str = "x25519_hkdf_sha256"
) -> HpkeReceiverConfig:
    if kem_alg not in KEM_ALGORITHMS:
        raise ValueError(
            f"Unknown KEM algorithm '{kem_alg}', expected one of: "
            f"{', '.join(KEM_ALGORITHMS)}"
        )
    if config_id is None:
        config_id = secrets.randbelow(256)

    if kem_alg == "x25519_hkdf_sha256":
        private_key = x25519.X25519PrivateKey.generate()
        private_bytes = private_key.private_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PrivateFormat.Raw,
            encryption_algorithm=serialization.NoEncryption(),
        )
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw,
        )
    else:
        private_key = ec.generate_private_key(ec.SECP256R1())
        private_bytes = private_key.private_numbers().private_value.to_bytes(32, "big")
        public_bytes = private_key.public_key().public_bytes(
            encoding=serialization.Encoding.X962,
            format=serialization.PublicFormat.UncompressedPoint,
        )

    return HpkeReceiverConfig(
        config_id=config_id,
        kem_id=KEM_ALGORITHMS[kem_alg],
        kdf_id="HkdfSha256",
        aead_id="Aes128Gcm",
        public_key=public_bytes,
        private_key=private_bytes,
    )


def load_receiver_config(path: str | Path) -> HpkeReceiverConfig:
    try:
        with open(path, "rt") as reader:
            return HpkeReceiverConfig.from_dict(json.load(reader))
    except (OSError, KeyError, TypeError, ValueError) as e:
        raise ValueError(f"Failed to load HPKE receiver config from: {path}") from e


def save_receiver_config(path: str | Path, receiver: HpkeReceiverConfig):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Private key material: keep it readable by the owner only.
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "wt") as writer:
        json.dump(receiver.to_dict(), writer, indent=2)


def load_or_generate_receiver_config(
    path: str | Path, kem_alg: str = "x25519_hkdf_sha256"
) -> HpkeReceiverConfig:
    """Reuse the config stored at ``path``, or generate and store a new one.

    Storing the generated config keeps its identity stable for the rest of
    the run and for later runs against the same aggregators.
    """
    if Path(path).exists():
        return load_receiver_config(path)
    receiver = generate_receiver_config(kem_alg=kem_alg)
    save_receiver_config(path, receiver)
    logging.info(
        f"Generated HPKE receiver config {receiver.config_id} ({kem_alg}) at: {path}"
    )
    return receiver
