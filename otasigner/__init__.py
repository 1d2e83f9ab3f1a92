#!/usr/bin/python3
# encoding: utf-8
# SPDX-FileCopyrightText: 2024 FC (Fay) Stegerman <flx@obfusk.net>
# SPDX-License-Identifier: GPL-3.0-or-later

"""
sign jar/apk/ota zip files with a v1 (JAR) signature & whole-file signature

otasigner signs ZIP-based archives (JARs, APKs, and OTA update packages) the
way the AOSP SignApk tool used to: it adds a manifest (MANIFEST.MF) with a
SHA-1 digest of every entry, a signature file (.SF) that digests the manifest,
and a detached PKCS #7 signature block (.RSA) over the signature file.

When signing in place, the signed archive is additionally signed as a whole
and that signature is appended to the ZIP archive comment, so that a minimal
verifier can check it by reading the end of the file without parsing the ZIP
structure.

Signing the same archive with the same key, certificate, and timestamp always
produces (bit-by-bit) identical output.


CLI
===

$ otasigner sign [OPTIONS] CERTIFICATE PRIVATE_KEY INPUT

The following environment variables can be set to 1, yes, or true to
override the default behaviour:

* set OTASIGNER_SHA256=1 to use SHA-256 instead of SHA-1
* set OTASIGNER_ADD_OTACERT=1 to add the certificate as META-INF/com/android/otacert


API
===

>> from otasigner import do_sign, sign, load_certificate, load_private_key
>> do_sign(input_zip, output_zip, certificate=cert, private_key=key)
>> do_sign(input_zip, certificate=cert, private_key=key)     # in place
>> error = sign(cert, key, input_zip, output_zip, "CERT")   # None on success

The following global variables (which default to False), can be set to
override the default behaviour:

* set use_sha256=True to use SHA-256 instead of SHA-1
* set add_otacert=True to add the certificate as META-INF/com/android/otacert
"""

import base64
import datetime
import hashlib
import io
import os
import re
import shutil
import struct
import sys
import tempfile
import zipfile
import zlib

from collections import namedtuple
from typing import Any, BinaryIO, Dict, List, Optional, Tuple, Union

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.padding import PKCS1v15
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey, RSAPublicKey
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed
from cryptography.hazmat.primitives.hashes import SHA1, SHA256
from pyasn1.codec.der.decoder import decode as pyasn1_decode
from pyasn1.codec.der.encoder import encode as pyasn1_encode
from pyasn1.error import PyAsn1Error
from pyasn1.type import univ as pyasn1_univ
from pyasn1_modules import rfc2315                                  # type: ignore[import-untyped]

__version__ = "1.0.0"
NAME = "otasigner"

DateTime = Tuple[int, int, int, int, int, int]
Attributes = Dict[str, str]
Bytes = Union[bytes, bytearray, memoryview]

CREATED_BY = f"1.0 ({NAME})"

JAR_MANIFEST = "META-INF/MANIFEST.MF"
OTACERT = "META-INF/com/android/otacert"
SIGNATURE_FILE = "META-INF/{}.SF"
SIGNATURE_BLOCK_FILE = "META-INF/{}.RSA"

# files matching this pattern are not copied to the output
STRIP_PATTERN = re.compile(r"\AMETA-INF/(?s:.)*\.(SF|RSA|DSA)\Z")
SIGNER_NAME = re.compile(r"\A[0-9A-Za-z_-]+\Z")
DIGEST_ATTRIBUTE = re.compile(r"\A[0-9A-Za-z_-]+-digest\Z", re.IGNORECASE)

MANIFEST_LINE_WIDTH = 72        # bytes, w/o line ending
SF_BUGGY_BLOCK_SIZE = 1024

EOCD_MAGIC = b"\x50\x4b\x05\x06"
EOCD_SIZE = 22                  # w/o comment
MAX_COMMENT_SIZE = 0xffff
TRAILER_SENTINEL = 0xffff

# raised by zipfile for corrupt, truncated, encrypted, or unsupported entries
ZIP_READ_ERRORS = (zlib.error, EOFError, NotImplementedError, RuntimeError)

DATETIMEMIN: DateTime = (1980, 1, 1, 0, 0, 0)
DATETIMEMAX: DateTime = (2107, 12, 31, 23, 59, 58)

# NB: the names are the JAR attribute prefixes (e.g. SHA1-Digest, SHA-256-Digest)
HASH_ALGOS = {
    # name      hasher          halgo   digestAlgorithm OID
    "SHA1": (hashlib.sha1, SHA1, pyasn1_univ.ObjectIdentifier("1.3.14.3.2.26")),
    "SHA-256": (hashlib.sha256, SHA256, pyasn1_univ.ObjectIdentifier("2.16.840.1.101.3.4.2.1")),
}
RSA_ENCRYPTION = pyasn1_univ.ObjectIdentifier("1.2.840.113549.1.1.1")

Manifest = namedtuple("Manifest", ("main", "entries"))
SigningContext = namedtuple("SigningContext",
                            ("certificate", "private_key", "hash_algo", "created_by"),
                            defaults=("SHA1", CREATED_BY))

use_sha256 = False      # use SHA-256 instead of SHA-1 in do_sign()
add_otacert = False     # add META-INF/com/android/otacert in do_sign()


class OTASignerError(Exception):
    """Base class for errors."""


class ZipError(OTASignerError):
    """Something wrong with ZIP file."""


class SigningError(OTASignerError):
    """Creating the signature failed (e.g. key does not match certificate)."""


class WholeFileSigningError(OTASignerError):
    """Whole-file signing was rejected."""


class ArchiveCommentError(WholeFileSigningError):
    """ZIP data does not end with a comment-less EOCD record."""


class CommentTooLargeError(WholeFileSigningError):
    """Signature does not fit in the ZIP archive comment."""


class SpuriousEOCDError(WholeFileSigningError):
    """Archive comment contains an EOCD signature."""


def is_reserved(filename: str) -> bool:
    r"""
    Returns whether filename is the manifest (MANIFEST.MF), the OTA certificate,
    or a signature (block) file (.SF, .RSA, or .DSA); these are never copied to
    the output and never added to the manifest.

    >>> is_reserved("classes.dex")
    False
    >>> is_reserved("META-INF/MANIFEST.MF")
    True
    >>> is_reserved("META-INF/CERT.SF")
    True
    >>> is_reserved("META-INF/CERT.RSA")
    True
    >>> is_reserved("META-INF/oops/CERT.DSA")
    True
    >>> is_reserved("META-INF/CERT.EC")
    False
    >>> is_reserved("META-INF/com/android/otacert")
    True
    >>> is_reserved("META-INF/com/android/update-binary")
    False
    >>> is_reserved("assets/META-INF/CERT.SF")
    False

    """
    return filename in (JAR_MANIFEST, OTACERT) or bool(STRIP_PATTERN.fullmatch(filename))


def is_directory(filename: str) -> bool:
    """ZIP entries with filenames that end with a '/' are directories."""
    return filename.endswith("/")


def _hash_algo(name: str) -> Tuple[Any, Any, Any]:
    try:
        return HASH_ALGOS[name]
    except KeyError:
        raise SigningError(f"Unsupported hash algorithm: {name}")  # pylint: disable=W0707


def _b64digest(hasher: Any, data: Bytes) -> str:
    return base64.b64encode(hasher(data).digest()).decode()


################################################################################
#
# https://docs.oracle.com/en/java/javase/21/docs/specs/jar/jar.html
#
# A manifest (or signature file) is a main section followed by one section per
# entry; each section is a list of "Key: Value" lines terminated by an empty
# line.  Lines longer than 72 bytes are continued on the next line, which
# starts with a single space.
#
#   Manifest-Version: 1.0
#   Created-By: 1.0 (otasigner)
#
#   Name: classes.dex
#   SHA1-Digest: ...
#
# The signature file has a digest of the whole manifest in its main section
# and a digest of each manifest section in its own sections.
#
################################################################################

def _wrap_line(line: bytes) -> bytes:
    r"""
    Wrap manifest line at MANIFEST_LINE_WIDTH bytes (w/o splitting UTF-8
    sequences) and add line ending(s).

    >>> _wrap_line(b"Manifest-Version: 1.0")
    b'Manifest-Version: 1.0\r\n'
    >>> [len(x) for x in _wrap_line(b"Name: " + b"x" * 70).split(b"\r\n")]
    [72, 5, 0]
    >>> [len(x) for x in _wrap_line(b"Name: " + b"x" * 200).split(b"\r\n")]
    [72, 72, 64, 0]
    >>> [len(x) for x in _wrap_line(b"Name: " + b"x" * 65 + "é".encode()).split(b"\r\n")]
    [71, 3, 0]

    """
    width, segments = MANIFEST_LINE_WIDTH, []
    while len(line) > width:
        cut = width
        while cut > 1 and (line[cut] & 0xc0) == 0x80:
            cut -= 1
        segments.append(line[:cut])
        line = line[cut:]
        width = MANIFEST_LINE_WIDTH - 1     # account for the space
    segments.append(line)
    return b"\r\n ".join(segments) + b"\r\n"


def dump_section(attributes: Attributes, name: Optional[str] = None) -> bytes:
    r"""
    Dump manifest section: a Name line (unless name is None) and the
    attributes, followed by an empty line.

    >>> dump_section({"SHA1-Digest": "qvTGHdzF6KLavt4PO0gs2a6pQ00="}, "hello.txt")
    b'Name: hello.txt\r\nSHA1-Digest: qvTGHdzF6KLavt4PO0gs2a6pQ00=\r\n\r\n'
    >>> dump_section({"Manifest-Version": "1.0"})
    b'Manifest-Version: 1.0\r\n\r\n'

    """
    lines = [] if name is None else [("Name", name)]
    lines.extend(attributes.items())
    return b"".join(_wrap_line(f"{k}: {v}".encode()) for k, v in lines) + b"\r\n"


def dump_manifest(manifest: Manifest) -> bytes:
    r"""
    Dump manifest (or signature file): the main section followed by the
    entry sections, sorted by name.

    >>> mf = Manifest({"Manifest-Version": "1.0", "Created-By": CREATED_BY},
    ...               {"b.txt": {"SHA1-Digest": "Yg=="}, "a.txt": {"SHA1-Digest": "YQ=="}})
    >>> for line in dump_manifest(mf).decode().split("\r\n"):
    ...     print(line or "-")
    Manifest-Version: 1.0
    Created-By: 1.0 (otasigner)
    -
    Name: a.txt
    SHA1-Digest: YQ==
    -
    Name: b.txt
    SHA1-Digest: Yg==
    -
    -

    """
    return dump_section(manifest.main) + b"".join(
        dump_section(manifest.entries[name], name) for name in sorted(manifest.entries))


def parse_manifest(data: bytes) -> Manifest:
    r"""
    Parse manifest (MANIFEST.MF); entry sections w/o a Name are ignored.

    >>> mf = parse_manifest(b"Manifest-Version: 1.0\r\nBuilt-By: me\r\n\r\n"
    ...                     b"Name: some/very/long/path\r\n /file.txt\r\n"
    ...                     b"X-Foo: bar\r\nSHA1-Digest: YQ==\r\n\r\n"
    ...                     b"X-Nameless: oops\n\n")
    >>> mf.main
    {'Manifest-Version': '1.0', 'Built-By': 'me'}
    >>> mf.entries
    {'some/very/long/path/file.txt': {'X-Foo': 'bar', 'SHA1-Digest': 'YQ=='}}
    >>> try:
    ...     parse_manifest(b"Manifest-Version: 1.0\r\noops\r\n")
    ... except ZipError as e:
    ...     print(e)
    Invalid manifest: missing header separator

    """
    sections: List[Dict[str, bytes]] = []
    section: Optional[Dict[str, bytes]] = None
    key: Optional[str] = None
    try:
        for line in data.splitlines():
            if not line:
                section = key = None
            elif line.startswith(b" "):
                if section is None or key is None:
                    raise ZipError("Invalid manifest: unexpected continuation line")
                section[key] += line[1:]
            elif b": " in line:
                k, v = line.split(b": ", 1)
                if section is None:
                    section = {}
                    sections.append(section)
                key = k.decode()
                section[key] = v
            else:
                raise ZipError("Invalid manifest: missing header separator")
        decoded = [{k: v.decode() for k, v in s.items()} for s in sections]
    except UnicodeDecodeError as e:
        raise ZipError(f"Invalid manifest: {e}")    # pylint: disable=W0707
    main = decoded[0] if decoded else {}
    entries = {}
    for attrs in decoded[1:]:
        if (name := attrs.pop("Name", None)) is not None:
            entries[name] = attrs
    return Manifest(main, {name: entries[name] for name in sorted(entries)})


def pad_signature_file(data: bytes) -> bytes:
    r"""
    Add an extra CRLF if the length of the signature file is a multiple of 1024
    bytes.

    A bug in the java.util.jar implementation of android platforms up to
    version 1.6 causes a spurious IOException to be thrown if the length of the
    signature file is a multiple of 1024 bytes.

    >>> len(pad_signature_file(b"x" * 1024))
    1026
    >>> len(pad_signature_file(b"x" * 1023)), len(pad_signature_file(b"x" * 1025))
    (1023, 1025)
    >>> pad_signature_file(b"x" * 2048)[-4:]
    b'xx\r\n'

    """
    if len(data) % SF_BUGGY_BLOCK_SIZE == 0:
        return data + b"\r\n"
    return data


def signature_file(manifest: Manifest, *, hash_algo: str = "SHA1",
                   created_by: str = CREATED_BY) -> bytes:
    r"""
    Create signature file (.SF) for manifest.

    The main section contains the digest of the whole manifest; every entry
    section the digest of the corresponding manifest section.  The digests are
    taken in a single pass over the manifest data, each one finishing (and
    resetting) the digest.

    >>> mf = Manifest({"Manifest-Version": "1.0"}, {"a.txt": {"SHA1-Digest": "YQ=="}})
    >>> for line in signature_file(mf).decode().split("\r\n")[:3]:
    ...     print(line.split(":")[0])
    Signature-Version
    Created-By
    SHA1-Digest-Manifest
    >>> sf = signature_file(mf).decode()
    >>> sf.split("\r\n")[4:6] == ["Name: a.txt", "SHA1-Digest: " + _b64digest(
    ...     hashlib.sha1, b"Name: a.txt\r\nSHA1-Digest: YQ==\r\n\r\n")]
    True

    """
    hasher = _hash_algo(hash_algo)[0]
    sections = [(name, dump_section(manifest.entries[name], name))
                for name in sorted(manifest.entries)]
    main = {
        "Signature-Version": "1.0",
        "Created-By": created_by,
        f"{hash_algo}-Digest-Manifest": _b64digest(hasher, dump_manifest(manifest)),
    }
    entries = {name: {f"{hash_algo}-Digest": _b64digest(hasher, data)} for name, data in sections}
    return pad_signature_file(dump_manifest(Manifest(main, entries)))


################################################################################
#
# Digest ledger & archive copier.
#
# Entries are always processed sorted by name so the output only depends on
# the contents of the input (and the fixed timestamp).
#
################################################################################

def digest_entries(zf: zipfile.ZipFile, hash_algo: str = "SHA1", *,
                   created_by: str = CREATED_BY) -> Manifest:
    """
    Create manifest with digests of all entries of zf that are not directories
    and not is_reserved().

    The main attributes and any non-digest attributes of the entries are
    copied from the existing manifest, if any.
    """
    hasher = _hash_algo(hash_algo)[0]
    infos = zf.infolist()
    if len(set(info.filename for info in infos)) != len(infos):
        raise ZipError("Duplicate ZIP entries")
    input_mf = None
    if any(info.filename == JAR_MANIFEST for info in infos):
        try:
            input_mf = parse_manifest(zf.read(JAR_MANIFEST))
        except ZIP_READ_ERRORS as e:
            raise ZipError(f"Failed to read ZIP entry {JAR_MANIFEST!r}: {e}")  # pylint: disable=W0707
    if input_mf is not None:
        main = {"Manifest-Version": input_mf.main.get("Manifest-Version", "1.0"), **input_mf.main}
    else:
        main = {"Manifest-Version": "1.0", "Created-By": created_by}
    entries = {}
    for info in sorted(infos, key=lambda info: info.filename):
        if is_directory(info.filename) or is_reserved(info.filename):
            continue
        h = hasher()
        try:
            with zf.open(info) as fh:
                while data := fh.read(4096):
                    h.update(data)
        except ZIP_READ_ERRORS as e:
            raise ZipError(f"Failed to read ZIP entry {info.filename!r}: {e}")     # pylint: disable=W0707
        seed = input_mf.entries.get(info.filename, {}) if input_mf is not None else {}
        attrs = {k: v for k, v in seed.items() if not DIGEST_ATTRIBUTE.fullmatch(k)}
        attrs[f"{hash_algo}-Digest"] = base64.b64encode(h.digest()).decode()
        entries[info.filename] = attrs
    return Manifest(main, entries)


def copy_entries(manifest: Manifest, zf_in: zipfile.ZipFile, zf_out: zipfile.ZipFile,
                 date_time: DateTime, compresslevel: Optional[int] = None) -> None:
    """
    Copy all entries in manifest from zf_in to zf_out, setting date_time to the
    fixed timestamp to reduce variation in the output (which makes incremental
    OTAs more efficient).

    STORED entries stay STORED; all others are (re)compressed.
    """
    for name in sorted(manifest.entries):
        try:
            info = zf_in.getinfo(name)
        except KeyError:
            raise ZipError(f"Missing ZIP entry: {name!r}")     # pylint: disable=W0707
        compress_type = zipfile.ZIP_STORED if info.compress_type == zipfile.ZIP_STORED \
            else zipfile.ZIP_DEFLATED
        info_out = _zip_info(name, date_time, compress_type, compresslevel)
        info_out.file_size = info.file_size
        try:
            with zf_in.open(info) as fhi, zf_out.open(info_out, "w") as fho:
                _copy_bytes(fhi, fho)
        except ZIP_READ_ERRORS as e:
            raise ZipError(f"Failed to read ZIP entry {name!r}: {e}")  # pylint: disable=W0707


def _zip_info(filename: str, date_time: DateTime, compress_type: int = zipfile.ZIP_DEFLATED,
              compresslevel: Optional[int] = None) -> zipfile.ZipInfo:
    info = zipfile.ZipInfo(filename, date_time)
    info.compress_type = compress_type
    info.create_system = 0      # independent of the platform we run on
    info.external_attr = 0
    info._compresslevel = compresslevel     # pylint: disable=W0212
    return info


def _copy_bytes(fhi: BinaryIO, fho: BinaryIO, blocksize: int = 4096) -> int:
    size = 0
    while data := fhi.read(blocksize):
        fho.write(data)
        size += len(data)
    return size


################################################################################
#
# https://www.rfc-editor.org/rfc/rfc2315
#
# The signature block is a DER-encoded PKCS #7 ContentInfo w/ SignedData:
# detached (no content), one certificate, one SignerInfo w/o authenticated
# attributes (i.e. the signature is over the data itself).
#
################################################################################

def signature_block(data: Bytes, ctx: SigningContext) -> bytes:
    """
    Create detached PKCS #7 signature block for data using ctx.

    Raises SigningError if the private key is not an RSA key matching the
    certificate, or if creating the signature fails.
    """
    hasher, halgo, oid = _hash_algo(ctx.hash_algo)
    key, cert = ctx.private_key, ctx.certificate
    if not isinstance(key, RSAPrivateKey):
        raise SigningError(f"Unsupported private key type: {key.__class__.__name__}")
    pubkey = cert.public_key()
    if not isinstance(pubkey, RSAPublicKey) or \
            pubkey.public_numbers() != key.public_key().public_numbers():
        raise SigningError("Private key does not match certificate")
    try:
        sig = key.sign(hasher(data).digest(), PKCS1v15(), Prehashed(halgo()))
        crt = pyasn1_decode(cert.public_bytes(serialization.Encoding.DER),
                            asn1Spec=rfc2315.Certificate())[0]
        sdat = rfc2315.SignedData()
        sdat["version"] = 1
        sdat["digestAlgorithms"][0]["algorithm"] = oid
        sdat["contentInfo"] = rfc2315.ContentInfo()
        sdat["contentInfo"]["contentType"] = rfc2315.ContentType(rfc2315.data)
        sdat["certificates"][0]["certificate"] = crt
        sinf = sdat["signerInfos"][0]
        sinf["version"] = 1
        sinf["issuerAndSerialNumber"]["issuer"] = crt["tbsCertificate"]["issuer"]
        sinf["issuerAndSerialNumber"]["serialNumber"] = crt["tbsCertificate"]["serialNumber"]
        sinf["digestAlgorithm"]["algorithm"] = oid
        sinf["digestEncryptionAlgorithm"]["algorithm"] = RSA_ENCRYPTION
        sinf["encryptedDigest"] = sig
        cinf = rfc2315.ContentInfo()
        cinf["contentType"] = rfc2315.ContentType(rfc2315.signedData)
        cinf["content"] = pyasn1_univ.Any(pyasn1_encode(sdat))
        return pyasn1_encode(cinf)
    except (PyAsn1Error, UnsupportedAlgorithm, TypeError, ValueError) as e:
        raise SigningError(f"Failed to create signature block: {e}")   # pylint: disable=W0707


################################################################################
#
# Whole-file signature (for OTA packages verified by e.g. recovery).
#
# For a ZIP file w/o archive comment, the EOCD record is the last 22 bytes.
# The signature is appended as the archive comment:
#
# =================================
# | ZIP entries, CD, EOCD (-2)    |  <- signed data
# | comment length (2B)           |
# ---------------------------------
# | "Created-By ..." + NUL        |
# | signature block (PKCS #7)     |
# | signature start       uint16  |  <- offset from the end of the file
# | 0xffff                uint16  |
# | comment length        uint16  |
# =================================
#
# In a ZIP file w/o archive comment, bytes [-6:-2] are the little-endian offset
# of the CD; for the two high bytes to be 0xffff the file would have to be
# nearly 4GB in size, so the 0xffff tells a new-style signed archive from an
# old one.
#
################################################################################

def check_eocd(zip_data: Bytes) -> None:
    r"""
    Check that zip_data ends with an EOCD record w/o archive comment.

    Raises ArchiveCommentError otherwise.

    >>> eocd = b"\x50\x4b\x05\x06" + b"\x00" * 18
    >>> check_eocd(b"data" + eocd)
    >>> try:
    ...     check_eocd(b"data" + eocd[:-2] + b"\x02\x00" + b"hi")
    ... except ArchiveCommentError as e:
    ...     print(e)
    ZIP data already has an archive comment

    """
    if len(zip_data) < EOCD_SIZE or bytes(zip_data[-EOCD_SIZE:-EOCD_SIZE + 4]) != EOCD_MAGIC:
        raise ArchiveCommentError("ZIP data already has an archive comment")


def whole_file_trailer(zip_data: Bytes, ctx: SigningContext) -> bytes:
    """
    Create the archive comment containing the whole-file signature for
    zip_data (which must end with an EOCD record w/o comment).

    Raises WholeFileSigningError if zip_data has a comment, if the comment would
    be too large, or if it would contain an EOCD signature (since verifiers
    check that the real EOCD record is the last one in the file).
    """
    check_eocd(zip_data)
    # readable message + NUL so tools that show the comment show something sensible
    message = f"Created-By {ctx.created_by}".encode()
    block = signature_block(memoryview(zip_data)[:-2], ctx)
    total_size = len(message) + 1 + len(block) + 6
    if total_size > MAX_COMMENT_SIZE:
        raise CommentTooLargeError(f"Signature is too big for ZIP file comment: {total_size} bytes")
    signature_start = total_size - len(message) - 1
    trailer = message + b"\x00" + block + struct.pack(
        "<HHH", signature_start, TRAILER_SENTINEL, total_size)
    if (offset := trailer.find(EOCD_MAGIC)) != -1:
        raise SpuriousEOCDError(f"Found spurious EOCD header at {offset}")
    return trailer


def sign_whole_file(zip_data: Bytes, fho: BinaryIO, ctx: SigningContext) -> None:
    """
    Write zip_data with a whole-file signature in its archive comment to fho.

    Nothing is written when creating the signature fails.
    """
    trailer = whole_file_trailer(zip_data, ctx)
    fho.write(memoryview(zip_data)[:-2])
    fho.write(struct.pack("<H", len(trailer)))
    fho.write(trailer)


################################################################################
#
# Orchestration.
#
################################################################################

def signing_timestamp(certificate: x509.Certificate) -> DateTime:
    """
    Fixed timestamp for ZIP entries: the certificate's notBefore + 1 hour (the
    certificate is assumed to be valid for at least an hour), clamped to what
    a ZIP file can store.
    """
    t = certificate.not_valid_before_utc + datetime.timedelta(hours=1)
    date_time = (t.year, t.month, t.day, t.hour, t.minute, t.second)
    return min(max(date_time, DATETIMEMIN), DATETIMEMAX)


def sign_entries(zf_in: zipfile.ZipFile, fho: BinaryIO, ctx: SigningContext, *,
                 signer_name: str = "CERT", date_time: Optional[DateTime] = None,
                 compresslevel: Optional[int] = 9, otacert: bool = False) -> None:
    """
    Write a signed copy of zf_in to fho: all entries (except directories and
    those matched by is_reserved()), the OTA certificate (if otacert is True),
    META-INF/MANIFEST.MF, META-INF/<signer_name>.SF, and
    META-INF/<signer_name>.RSA.
    """
    if not SIGNER_NAME.fullmatch(signer_name):
        raise ValueError(f"Invalid signer name: {signer_name!r}")
    if date_time is None:
        date_time = signing_timestamp(ctx.certificate)
    for info in zf_in.infolist():
        if STRIP_PATTERN.fullmatch(info.filename):
            print(f"Warning: stripping existing signature file {info.filename!r}.",
                  file=sys.stderr)
    manifest = digest_entries(zf_in, ctx.hash_algo, created_by=ctx.created_by)
    with zipfile.ZipFile(fho, "w") as zf_out:
        copy_entries(manifest, zf_in, zf_out, date_time, compresslevel)
        if otacert:
            # should exactly match one of the certificates in otacerts.zip on the device
            data = ctx.certificate.public_bytes(serialization.Encoding.PEM)
            zf_out.writestr(_zip_info(OTACERT, date_time, compresslevel=compresslevel), data)
            hasher = _hash_algo(ctx.hash_algo)[0]
            attrs = {f"{ctx.hash_algo}-Digest": _b64digest(hasher, data)}
            manifest = Manifest(manifest.main, {**manifest.entries, OTACERT: attrs})
        sf_data = signature_file(manifest, hash_algo=ctx.hash_algo, created_by=ctx.created_by)
        sbf_data = signature_block(sf_data, ctx)
        for filename, data in ((JAR_MANIFEST, dump_manifest(manifest)),
                               (SIGNATURE_FILE.format(signer_name), sf_data),
                               (SIGNATURE_BLOCK_FILE.format(signer_name), sbf_data)):
            zf_out.writestr(_zip_info(filename, date_time, compresslevel=compresslevel), data)


# NB: not atomic w/ multiple concurrent signers of the same file
def do_sign(input_zip: str, output_zip: Optional[str] = None, *,
            certificate: x509.Certificate, private_key: RSAPrivateKey,
            signer_name: str = "CERT", date_time: Optional[DateTime] = None,
            hash_algo: Optional[str] = None, otacert: Optional[bool] = None,
            created_by: str = CREATED_BY) -> None:
    """
    Sign input_zip using certificate and private_key.

    When output_zip is None (or empty, or the same file as input_zip, e.g. via a
    symlink), also add a whole-file signature and replace input_zip; uses the
    default compression level in that case (much faster, only slightly
    larger); otherwise write the signed archive to output_zip using maximum
    compression.

    The hash_algo and otacert arguments default to the use_sha256 and
    add_otacert global variables when None.
    """
    if hash_algo is None:
        hash_algo = "SHA-256" if use_sha256 else "SHA1"
    if otacert is None:
        otacert = add_otacert
    ctx = SigningContext(certificate, private_key, hash_algo, created_by)
    replace = not output_zip or os.path.abspath(output_zip) == os.path.abspath(input_zip) \
        or (os.path.exists(output_zip) and os.path.samefile(output_zip, input_zip))
    with zipfile.ZipFile(input_zip, "r") as zf_in:
        if replace:
            fhb = io.BytesIO()
            sign_entries(zf_in, fhb, ctx, signer_name=signer_name, date_time=date_time,
                         compresslevel=None, otacert=otacert)
        else:
            assert output_zip is not None
            with open(output_zip, "wb") as fho:
                sign_entries(zf_in, fho, ctx, signer_name=signer_name, date_time=date_time,
                             compresslevel=9, otacert=otacert)
    if replace:
        _replace_signed(input_zip, fhb.getbuffer(), ctx)


def _replace_signed(path: str, zip_data: memoryview, ctx: SigningContext) -> None:
    fd, tmp = tempfile.mkstemp(prefix=f".{NAME}-", suffix=".tmp",
                               dir=os.path.dirname(os.path.abspath(path)))
    try:
        with os.fdopen(fd, "wb") as fho:
            sign_whole_file(zip_data, fho, ctx)
        shutil.copymode(path, tmp)
        os.replace(tmp, path)
    except BaseException:
        os.unlink(tmp)
        raise


def sign(certificate: x509.Certificate, private_key: RSAPrivateKey, input_zip: str,
         output_zip: Optional[str] = None, signer_name: str = "CERT") -> Optional[str]:
    """
    Like do_sign(), but returns None on success, error message otherwise.

    NB: a partially written output_zip is not removed on failure.
    """
    try:
        do_sign(input_zip, output_zip, certificate=certificate, private_key=private_key,
                signer_name=signer_name)
    except (OTASignerError, zipfile.BadZipFile, OSError, ValueError) as e:
        return f"{e.__class__.__name__}: {e}"
    return None


def load_certificate(data: bytes) -> x509.Certificate:
    """Load X.509 certificate (PEM or DER)."""
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            return x509.load_pem_x509_certificate(data)
        return x509.load_der_x509_certificate(data)
    except ValueError as e:
        raise SigningError(f"Failed to load certificate: {e}")     # pylint: disable=W0707


def load_private_key(data: bytes, password: Optional[str] = None) -> RSAPrivateKey:
    """Load RSA private key (PEM or DER; e.g. PKCS #8), encrypted w/ password if not None."""
    passwd = password.encode() if password else None
    try:
        if data.lstrip().startswith(b"-----BEGIN"):
            key = serialization.load_pem_private_key(data, passwd)
        else:
            key = serialization.load_der_private_key(data, passwd)
    except (TypeError, ValueError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Failed to load private key: {e}")     # pylint: disable=W0707
    if not isinstance(key, RSAPrivateKey):
        raise SigningError(f"Unsupported private key type: {key.__class__.__name__}")
    return key


def main() -> None:
    """CLI; requires click."""

    global use_sha256, add_otacert
    use_sha256 = os.environ.get("OTASIGNER_SHA256") in ("1", "yes", "true")
    add_otacert = os.environ.get("OTASIGNER_ADD_OTACERT") in ("1", "yes", "true")

    import click

    @click.group(help="""
        otasigner - sign jar/apk/ota zip files (v1 & whole-file signature)
    """)
    @click.version_option(__version__)
    def cli() -> None:
        pass

    @cli.command(help="""
        Sign INPUT using CERTIFICATE and PRIVATE_KEY (PEM or DER).

        Writes the signed archive to OUTPUT; without --output (or when OUTPUT
        is INPUT), signs INPUT in place and adds a whole-file signature to its
        archive comment.

        The private key password is read from $OTASIGNER_PRIVKEY_PASSWORD
        unless --password-prompt is used.
    """)
    @click.option("-o", "--output", "output_zip", metavar="OUTPUT",
                  type=click.Path(dir_okay=False), help="Output file.")
    @click.option("--name", "signer_name", default="CERT", show_default=True,
                  help="Signer name (META-INF/NAME.SF & META-INF/NAME.RSA).")
    @click.option("--sha256/--sha1", default=None,
                  help="Use SHA-256 instead of SHA-1.  [default: sha1]")
    @click.option("--otacert/--no-otacert", default=None,
                  help="Add certificate as META-INF/com/android/otacert.")
    @click.option("--password-prompt", "prompt", is_flag=True,
                  help="Private key is encrypted; prompt for password.")
    @click.argument("certificate", type=click.Path(exists=True, dir_okay=False))
    @click.argument("private_key", type=click.Path(exists=True, dir_okay=False))
    @click.argument("input_zip", metavar="INPUT", type=click.Path(exists=True, dir_okay=False))
    def sign(certificate: str, private_key: str, input_zip: str, *, sha256: Optional[bool],
             prompt: bool, **kwargs: Any) -> None:
        if prompt:
            password = click.prompt("Password", hide_input=True)
        else:
            password = os.environ.get("OTASIGNER_PRIVKEY_PASSWORD")
        with open(certificate, "rb") as fh:
            cert = load_certificate(fh.read())
        with open(private_key, "rb") as fh:
            key = load_private_key(fh.read(), password or None)
        hash_algo = None if sha256 is None else ("SHA-256" if sha256 else "SHA1")
        do_sign(input_zip, certificate=cert, private_key=key, hash_algo=hash_algo, **kwargs)

    try:
        cli(prog_name=NAME)
    except (OTASignerError, zipfile.BadZipFile, ValueError) as e:
        click.echo(f"Error: {e}.", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()

# vim: set tw=80 sw=4 sts=4 et fdm=marker :
