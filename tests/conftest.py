import datetime

import pytest

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID


def _name(cn):
    return x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])


def _now():
    return datetime.datetime.now(datetime.timezone.utc)


def make_certificate(subject_cn, key, issuer_cn=None, issuer_key=None, serial=1):
    now = _now()
    builder = (
        x509.CertificateBuilder()
        .subject_name(_name(subject_cn))
        .issuer_name(_name(issuer_cn or subject_cn))
        .public_key(key.public_key())
        .serial_number(serial)
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
    )
    return builder.sign(issuer_key or key, hashes.SHA256())


def make_request(subject_cn, key):
    builder = x509.CertificateSigningRequestBuilder().subject_name(_name(subject_cn))
    return builder.sign(key, hashes.SHA256())


def make_crl(issuer_cn, key, serials=()):
    now = _now()
    builder = (
        x509.CertificateRevocationListBuilder()
        .issuer_name(_name(issuer_cn))
        .last_update(now)
        .next_update(now + datetime.timedelta(days=7))
    )
    for serial in serials:
        revoked = x509.RevokedCertificateBuilder().serial_number(serial).revocation_date(now).build()
        builder = builder.add_revoked_certificate(revoked)
    return builder.sign(key, hashes.SHA256())


def pem_of(obj):
    return obj.public_bytes(serialization.Encoding.PEM)


def private_pem(key):
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption()
    )


def public_pem(key):
    return key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.PKCS1
    )


@pytest.fixture(scope="session")
def rsa_keys():
    """A handful of RSA keys, generated once; tests index into the list."""
    return [rsa.generate_private_key(public_exponent=65537, key_size=2048) for _ in range(4)]


@pytest.fixture
def root_key(rsa_keys):
    return rsa_keys[0]


@pytest.fixture
def leaf_key(rsa_keys):
    return rsa_keys[1]


@pytest.fixture
def other_key(rsa_keys):
    return rsa_keys[2]


@pytest.fixture
def pki_dir(tmp_path, root_key, leaf_key):
    """Self-signed root CA, a leaf request and the leaf's private key."""
    (tmp_path / "ca.pem").write_bytes(pem_of(make_certificate("Root", root_key)))
    (tmp_path / "leaf.csr").write_bytes(pem_of(make_request("Leaf", leaf_key)))
    (tmp_path / "leaf.key").write_bytes(private_pem(leaf_key))
    return tmp_path
