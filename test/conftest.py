# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

import datetime
import zipfile

from pathlib import Path

import pytest

from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

import otasigner

NOT_BEFORE = datetime.datetime(2020, 1, 1, tzinfo=datetime.timezone.utc)
NOT_AFTER = datetime.datetime(2050, 1, 1, tzinfo=datetime.timezone.utc)

INPUT_MANIFEST = (
    b"Manifest-Version: 1.0\r\n"
    b"Created-By: 1.8.0 (Oracle Corporation)\r\n"
    b"\r\n"
    b"Name: hello.txt\r\n"
    b"X-Custom: kept\r\n"
    b"SHA-256-Digest: c3RhbGU=\r\n"
    b"\r\n"
)


def self_signed(key: rsa.RSAPrivateKey, cn: str = "otasigner test",
                not_before: datetime.datetime = NOT_BEFORE) -> x509.Certificate:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, cn)])
    return (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(4242)
        .not_valid_before(not_before)
        .not_valid_after(NOT_AFTER)
        .sign(key, hashes.SHA256())
    )


@pytest.fixture(scope="session")
def private_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def other_key() -> rsa.RSAPrivateKey:
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def certificate(private_key: rsa.RSAPrivateKey) -> x509.Certificate:
    return self_signed(private_key)


@pytest.fixture()
def ctx(certificate: x509.Certificate, private_key: rsa.RSAPrivateKey) -> otasigner.SigningContext:
    return otasigner.SigningContext(certificate, private_key)


@pytest.fixture()
def unsigned_zip(tmp_path: Path) -> Path:
    """
    An unsigned archive with a deflated and a stored entry, a directory, an
    existing manifest, and stale signature files.
    """
    path = tmp_path / "unsigned.zip"
    with zipfile.ZipFile(path, "w") as zf:
        zf.writestr("META-INF/MANIFEST.MF", INPUT_MANIFEST, compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("META-INF/OLD.SF", b"stale", compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("META-INF/OLD.RSA", b"stale", compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("hello.txt", b"hello", compress_type=zipfile.ZIP_DEFLATED)
        zf.writestr("assets/", b"")
        zf.writestr("assets/stored.bin", bytes(range(256)), compress_type=zipfile.ZIP_STORED)
        zf.writestr("lib/armeabi/fake.so", b"\x7fELF" + b"\x00" * 1000,
                    compress_type=zipfile.ZIP_DEFLATED)
    return path

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
