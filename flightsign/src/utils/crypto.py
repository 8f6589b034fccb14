from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID


@dataclass
class CertificateInfo:
    """Fields we care about from an X.509 signing certificate"""

    common_name: str
    serial_number: str
    team_id: Optional[str]
    not_before: datetime
    not_after: datetime
    has_private_key: bool = False


def generate_private_key() -> rsa.RSAPrivateKey:
    # Apple only accepts 2048-bit RSA keys for signing certificate requests
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


def build_csr(private_key: rsa.RSAPrivateKey, common_name: str, email: str = "") -> str:
    """Create a PEM encoded certificate signing request"""
    attributes = [x509.NameAttribute(NameOID.COMMON_NAME, common_name)]
    if email:
        attributes.append(x509.NameAttribute(NameOID.EMAIL_ADDRESS, email))
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name(attributes))
        .sign(private_key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode("ascii")


def load_der_or_pem(data: bytes) -> x509.Certificate:
    if data.lstrip().startswith(b"-----BEGIN"):
        return x509.load_pem_x509_certificate(data)
    return x509.load_der_x509_certificate(data)


def export_p12(
    private_key: rsa.RSAPrivateKey,
    certificate: x509.Certificate,
    password: Optional[str],
    friendly_name: str,
) -> bytes:
    """Bundle a key and its certificate so later runs can import them"""
    encryption = (
        serialization.BestAvailableEncryption(password.encode())
        if password
        else serialization.NoEncryption()
    )
    return pkcs12.serialize_key_and_certificates(
        friendly_name.encode(), private_key, certificate, None, encryption
    )


def load_certificate_file(
    path: Path, password: Optional[str] = None
) -> Tuple[x509.Certificate, bool]:
    """Read a .p12 or .cer file; returns the certificate and whether a key was present"""
    data = Path(path).read_bytes()
    if path.suffix.lower() in (".p12", ".pfx"):
        key, cert, _ = pkcs12.load_key_and_certificates(
            data, password.encode() if password else None
        )
        if cert is None:
            raise ValueError(f"No certificate found in {path}")
        return cert, key is not None
    return load_der_or_pem(data), False


def describe_certificate(cert: x509.Certificate, has_private_key: bool = False) -> CertificateInfo:
    subject = cert.subject

    def first(oid) -> Optional[str]:
        values = subject.get_attributes_for_oid(oid)
        return str(values[0].value) if values else None

    return CertificateInfo(
        common_name=first(NameOID.COMMON_NAME) or "",
        serial_number=format(cert.serial_number, "X"),
        team_id=first(NameOID.ORGANIZATIONAL_UNIT_NAME),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        has_private_key=has_private_key,
    )
