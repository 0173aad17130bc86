from __future__ import annotations

from dataclasses import dataclass, field

from cryptography.hazmat.primitives.asymmetric import ed25519
from cryptography.hazmat.primitives.serialization import Encoding, NoEncryption, PrivateFormat, PublicFormat

from .interfaces import SystemKeyManager
from .models import SystemKey
from .secret import Secret

SYSTEM_KEY_COMMENT = "keymaster-system"


@dataclass
class SshKeypair:
    public_key: str
    private_key: Secret = field(repr=False)


def generate_ed25519(comment: str = "") -> SshKeypair:
    """New Ed25519 keypair: ``ssh-ed25519 AAAA... comment`` plus OpenSSH PEM private key."""
    priv = ed25519.Ed25519PrivateKey.generate()
    pub_bytes = priv.public_key().public_bytes(Encoding.OpenSSH, PublicFormat.OpenSSH)
    priv_bytes = priv.private_bytes(Encoding.PEM, PrivateFormat.OpenSSH, NoEncryption())

    public = pub_bytes.decode("ascii")
    if comment:
        public = f"{public} {comment}"
    return SshKeypair(public_key=public, private_key=Secret(priv_bytes))


def rotate_system_key(store: SystemKeyManager) -> SystemKey:
    """Generate a fresh system key and make it active; the first call creates serial 1."""
    pair = generate_ed25519(SYSTEM_KEY_COMMENT)
    with pair.private_key as private:
        if store.get_active_system_key() is None:
            return store.create_system_key(pair.public_key, private.reveal())
        return store.rotate_system_key(pair.public_key, private.reveal())
