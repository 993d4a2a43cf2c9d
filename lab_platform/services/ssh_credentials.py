"""SSH credential preparation for lab containers"""

from dataclasses import dataclass, field
from typing import Optional

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey


@dataclass(frozen=True)
class SSHKeyMaterial:
    """
    Public key to inject plus, when generated here, its private half.

    The private key lives only in this object and in the ProvisioningResult
    built from it; it is never written to the database or to disk.
    """
    public_key: str
    private_key: Optional[str] = field(default=None, repr=False)
    generated: bool = False


def generate_keypair(comment: str = "lab-platform") -> SSHKeyMaterial:
    """Generate a fresh Ed25519 keypair in OpenSSH encodings"""
    key = Ed25519PrivateKey.generate()
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.OpenSSH,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("ascii")
    public_line = key.public_key().public_bytes(
        encoding=serialization.Encoding.OpenSSH,
        format=serialization.PublicFormat.OpenSSH,
    ).decode("ascii")
    return SSHKeyMaterial(
        public_key=f"{public_line} {comment}",
        private_key=private_pem,
        generated=True,
    )


def prepare_credentials(user_public_key: Optional[str], comment: str = "lab-platform") -> SSHKeyMaterial:
    """Use the caller's key when given, otherwise generate one"""
    if user_public_key and user_public_key.strip():
        return SSHKeyMaterial(public_key=user_public_key.strip())
    return generate_keypair(comment=comment)
