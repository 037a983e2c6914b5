#!/usr/bin/env python3
# site_certs.py
# -*- coding: utf-8 -*-
"""
Self-signed TLS material for serving a local folder over HTTPS.

A generated certificate is kept in a single PEM file (private key followed by
certificate) next to this module, and rotated once it is older than 30 days.
User-supplied key/cert files take precedence and are never rotated.
"""
import ipaddress
import logging
import os
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional, Tuple

# --- cryptography imports (modern style) ---
from cryptography import x509
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from site_config import ServerConfig, SiteConfigError

# Generated bundle location, relative to the installation directory.
CERT_DIR = Path(__file__).resolve().parent / "ssl"
CERT_FILE = CERT_DIR / "localhost.pem"

CERTIFICATE_MAX_AGE = timedelta(days=30)

_PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"

SAN_DNS_NAMES = ("localhost", "localhost.localdomain", "lvh.me", "*.lvh.me")
SAN_IP_ADDRESSES = ("::1", "127.0.0.1", "fe80::1")


@dataclass(frozen=True)
class CertificateBundle:
    private_key: bytes
    certificate: bytes
    created_at: datetime
    # Files handed to the TLS listener. A generated bundle uses the same file for both.
    key_path: Optional[str] = None
    cert_path: Optional[str] = None
    generated: bool = False


def _file_created_at(path: Path) -> datetime:
    """Creation time of a file (birth time where the platform records it)."""
    st = os.stat(path)
    created = getattr(st, "st_birthtime", None) or st.st_ctime
    return datetime.fromtimestamp(created, tz=timezone.utc)


def _write_pem(path: Path, data: bytes, mode: int = 0o600):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(data)
    try:
        os.chmod(path, mode)
    except OSError as e:
        logging.debug("Certificate: could not restrict permissions on %s: %s", path, e)


def generate_self_signed_bundle(common_name: str = "localhost", days: int = 30,
                                now: Optional[datetime] = None) -> CertificateBundle:
    """
    Creates a new self-signed localhost certificate and its RSA key.

    The certificate is CA-capable, signed with SHA-256 and valid for `days`.
    The returned bundle is not yet persisted (no key/cert paths).
    """
    now = now or datetime.now(timezone.utc)
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])

    san_list = [x509.DNSName(name) for name in SAN_DNS_NAMES]
    san_list += [x509.IPAddress(ipaddress.ip_address(ip)) for ip in SAN_IP_ADDRESSES]

    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)
        .add_extension(
            x509.KeyUsage(
                digital_signature=True,
                content_commitment=True,  # nonRepudiation
                key_encipherment=True,
                data_encipherment=True,
                key_agreement=False,
                key_cert_sign=True,
                crl_sign=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True
        )
        .add_extension(
            x509.ExtendedKeyUsage([ExtendedKeyUsageOID.SERVER_AUTH, ExtendedKeyUsageOID.CLIENT_AUTH]),
            critical=False
        )
        .add_extension(x509.SubjectAlternativeName(san_list), critical=False)
        .add_extension(x509.SubjectKeyIdentifier.from_public_key(key.public_key()), critical=False)
        .sign(key, hashes.SHA256())
    )

    return CertificateBundle(
        private_key=key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.TraditionalOpenSSL,
            encryption_algorithm=serialization.NoEncryption()
        ),
        certificate=cert.public_bytes(serialization.Encoding.PEM),
        created_at=now,
        generated=True,
    )


def _split_pem(data: bytes) -> Tuple[bytes, bytes]:
    """Splits a combined key+certificate PEM into (key, certificate)."""
    marker = data.find(_PEM_CERT_MARKER)
    if marker <= 0:
        raise ValueError("no private key followed by a certificate")
    key_pem, cert_pem = data[:marker], data[marker:]
    # Parse only to reject a damaged file.
    x509.load_pem_x509_certificate(cert_pem)
    serialization.load_pem_private_key(key_pem, password=None)
    return key_pem, cert_pem


def _read_user_bundle(config: ServerConfig) -> CertificateBundle:
    contents = {}
    for label, path in (("key", config.KEY_FILE), ("certificate", config.CERT_FILE)):
        try:
            contents[label] = Path(path).read_bytes()
        except OSError as e:
            raise SiteConfigError(f"Cannot read TLS {label} file {path}: {e.strerror or e}")
    logging.info("Certificate: using supplied key %s and certificate %s", config.KEY_FILE, config.CERT_FILE)
    return CertificateBundle(
        private_key=contents["key"],
        certificate=contents["certificate"],
        created_at=_file_created_at(Path(config.CERT_FILE)),
        key_path=config.KEY_FILE,
        cert_path=config.CERT_FILE,
    )


def _remove_bundle(cert_file: Path):
    try:
        cert_file.unlink(missing_ok=True)
    except OSError as e:
        raise SiteConfigError(f"Cannot remove old certificate {cert_file}: {e.strerror or e}")


def obtain_certificate(config: ServerConfig, cert_file: Path = CERT_FILE,
                       now: Optional[datetime] = None) -> CertificateBundle:
    """
    Returns the TLS material for the listener.

    - User-supplied key and certificate (both configured) are read as-is.
    - Otherwise the generated bundle at `cert_file` is reused while younger than
      30 days, and replaced once older, damaged or when regeneration is forced.

    Raises:
        SiteConfigError: a supplied file cannot be read, or the generated
            bundle cannot be removed or written.
    """
    if config.uses_user_certificate:
        return _read_user_bundle(config)
    if config.KEY_FILE or config.CERT_FILE:
        logging.warning("Certificate: both a key and a certificate file are needed; using a generated certificate.")

    now = now or datetime.now(timezone.utc)
    cert_file = Path(cert_file)

    if cert_file.exists():
        created_at = _file_created_at(cert_file)
        age = now - created_at
        stale = age > CERTIFICATE_MAX_AGE
        if stale or config.FORCE_CERTIFICATE_REGENERATION:
            reason = f"older than {CERTIFICATE_MAX_AGE.days} days" if stale else "regeneration forced"
            logging.info("Certificate: removing %s (%s)", cert_file, reason)
            _remove_bundle(cert_file)
        else:
            try:
                key_pem, cert_pem = _split_pem(cert_file.read_bytes())
            except (OSError, ValueError) as e:
                logging.warning("Certificate: existing file %s failed to parse (%s); regenerating.", cert_file, e)
                _remove_bundle(cert_file)
            else:
                logging.info("Certificate: using existing certificate %s", cert_file)
                return CertificateBundle(
                    private_key=key_pem,
                    certificate=cert_pem,
                    created_at=created_at,
                    key_path=str(cert_file),
                    cert_path=str(cert_file),
                )

    logging.info("Certificate: generating self-signed certificate for localhost...")
    bundle = generate_self_signed_bundle(now=now)
    pem = (bundle.private_key.decode("utf-8") + bundle.certificate.decode("utf-8")).encode("utf-8")
    try:
        _write_pem(cert_file, pem)
    except OSError as e:
        raise SiteConfigError(f"Cannot write generated certificate to {cert_file}: {e.strerror or e}")
    logging.info("Certificate: wrote %s", cert_file)
    return replace(bundle, key_path=str(cert_file), cert_path=str(cert_file))
