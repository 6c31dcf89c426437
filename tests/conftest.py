import datetime
import ipaddress

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

from tlsrelay.tls import ServerCertificate


def _self_signed(common_name: str):
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "tlsrelay tests"),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)
    cert = x509.CertificateBuilder().subject_name(subject).issuer_name(issuer)\
        .public_key(key.public_key()).serial_number(x509.random_serial_number())\
        .not_valid_before(now - datetime.timedelta(days=1))\
        .not_valid_after(now + datetime.timedelta(days=30))\
        .add_extension(x509.SubjectAlternativeName([
            x509.DNSName("localhost"),
            x509.IPAddress(ipaddress.ip_address("127.0.0.1"))]), critical=False)\
        .add_extension(x509.BasicConstraints(ca=True, path_length=None), critical=True)\
        .sign(key, hashes.SHA256())
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.TraditionalOpenSSL,
        serialization.NoEncryption())
    return cert_pem, key_pem


def _write_pair(directory, stem, common_name):
    cert_pem, key_pem = _self_signed(common_name)
    certfile = directory / f"{stem}.pem"
    keyfile = directory / f"{stem}.key"
    certfile.write_bytes(cert_pem)
    keyfile.write_bytes(key_pem)
    return ServerCertificate(certfile, keyfile)


@pytest.fixture(scope="session")
def relay_cert(tmp_path_factory) -> ServerCertificate:
    """Certificate the relay presents to its clients."""
    return _write_pair(tmp_path_factory.mktemp("relay-certs"), "relay", "relay.localhost")


@pytest.fixture(scope="session")
def upstream_cert(tmp_path_factory) -> ServerCertificate:
    """Certificate of the stand-in destination; never trusted by anyone."""
    return _write_pair(tmp_path_factory.mktemp("upstream-certs"), "upstream", "upstream.localhost")
