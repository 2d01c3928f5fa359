#!/usr/bin/env python3

#
# inventory a pile of PEM files: certs, requests, CRLs, RSA keys.
#
# Every distinct public key gets one name (taken from the best artifact that
# carries it), and every signed thing gets told which of those keys signed it.
#
# Usage: $0 [-opts] path [path ...]
#

import argparse
import json
import logging
import os
import stat
import sys
import warnings
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

import pydantic

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa


# 10 megs... a PEM bigger than that is not a PEM
MAX_FILE_SIZE = 1024 * 1024 * 10

# shown when no registered key verifies a signature
UNKNOWN_SIGNER = "???"

# files that live next to a CA's PEMs but are never PEMs themselves
EXPECTED_NON_ARTIFACTS = frozenset([
    "inventory.txt",
    "ca.pass",
    "serial",
    "serial.old",
    "index.txt",
    "index.txt.old",
    "index.txt.attr",
    "index.txt.attr.old",
    "crlnumber",
    "crlnumber.old",
])

# Suppress warnings
warnings.filterwarnings("ignore", message="Parsed a serial number which wasn't positive")
warnings.filterwarnings("ignore", message="Properties that return a naïve datetime object have been deprecated")

# Configure logging
logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=logging.INFO
)
logger = logging.getLogger("pemledger")


class Settings(pydantic.BaseModel):
    """Application settings."""
    verbose:        bool = False
    debug:          bool = False
    max_file_size:  int  = MAX_FILE_SIZE
    output_format:  str  = "text"


class NamePriority(IntEnum):
    """Which artifact gets to name a key; lower wins."""
    CERTIFICATE_SUBJECT = 0
    REQUEST_SUBJECT = 1
    PRIVATE_KEY = 2
    PUBLIC_KEY = 3


@dataclass(frozen=True)
class PublicKeyMaterial:
    """A public key, compared by its PEM SubjectPublicKeyInfo text only."""
    pem:        str
    key_obj:    Any = field(default=None, compare=False, repr=False)

    @classmethod
    def from_key(cls, key: Any) -> "PublicKeyMaterial":
        pem = key.public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo
        )
        return cls(pem=pem.decode("ascii"), key_obj=key)


#
# the closed set of things a file can turn out to be
#

@dataclass(frozen=True)
class Certificate:
    """X.509 certificate."""
    subject:        str
    issuer:         str
    serial:         int
    public_key:     PublicKeyMaterial
    cert_obj:       x509.Certificate = field(compare=False, repr=False)

    @property
    def signature(self) -> bytes:
        return self.cert_obj.signature

    @property
    def signed_bytes(self) -> bytes:
        return self.cert_obj.tbs_certificate_bytes

    @property
    def hash_algorithm(self) -> Any:
        return self.cert_obj.signature_hash_algorithm


@dataclass(frozen=True)
class Request:
    """Certificate signing request."""
    subject:        str
    public_key:     PublicKeyMaterial
    csr_obj:        x509.CertificateSigningRequest = field(compare=False, repr=False)

    @property
    def signature(self) -> bytes:
        return self.csr_obj.signature

    @property
    def signed_bytes(self) -> bytes:
        return self.csr_obj.tbs_certrequest_bytes

    @property
    def hash_algorithm(self) -> Any:
        return self.csr_obj.signature_hash_algorithm


@dataclass(frozen=True)
class Crl:
    """Certificate revocation list."""
    issuer:             str
    revoked_serials:    Tuple[int, ...]
    crl_obj:            x509.CertificateRevocationList = field(compare=False, repr=False)

    @property
    def signature(self) -> bytes:
        return self.crl_obj.signature

    @property
    def signed_bytes(self) -> bytes:
        return self.crl_obj.tbs_certlist_bytes

    @property
    def hash_algorithm(self) -> Any:
        return self.crl_obj.signature_hash_algorithm


@dataclass(frozen=True)
class RsaKey:
    """RSA private or public key; public_key is derived for private ones."""
    is_private:     bool
    public_key:     PublicKeyMaterial
    key_obj:        Any = field(compare=False, repr=False)


Artifact = Union[Certificate, Request, Crl, RsaKey]
SignedArtifact = Union[Certificate, Request, Crl]


@dataclass(frozen=True)
class KeyExtraction:
    """A key as seen by one artifact, with the name that artifact would give it."""
    key:        PublicKeyMaterial
    priority:   int
    label:      str


# the registry keeps the same shape for the winner of each key
KeyRecord = KeyExtraction


@dataclass(frozen=True, order=True)
class ReportEntry:
    """One line-group of the final report; sorts by description, then path."""
    description:    str
    path:           str


#
# Classifier
#

def _load_crl(data: bytes) -> Crl:
    crl = x509.load_pem_x509_crl(data)
    return Crl(
        issuer=crl.issuer.rfc4514_string(),
        revoked_serials=tuple(revoked.serial_number for revoked in crl),
        crl_obj=crl,
    )


def _load_request(data: bytes) -> Request:
    csr = x509.load_pem_x509_csr(data)
    return Request(
        subject=csr.subject.rfc4514_string(),
        public_key=PublicKeyMaterial.from_key(csr.public_key()),
        csr_obj=csr,
    )


def _load_certificate(data: bytes) -> Certificate:
    cert = x509.load_pem_x509_certificate(data)
    return Certificate(
        subject=cert.subject.rfc4514_string(),
        issuer=cert.issuer.rfc4514_string(),
        serial=cert.serial_number,
        public_key=PublicKeyMaterial.from_key(cert.public_key()),
        cert_obj=cert,
    )


def _load_private_key(data: bytes) -> Optional[RsaKey]:
    key = serialization.load_pem_private_key(data, password=None)
    if not isinstance(key, rsa.RSAPrivateKey):
        return None
    return RsaKey(is_private=True, public_key=PublicKeyMaterial.from_key(key.public_key()), key_obj=key)


def _load_public_key(data: bytes) -> Optional[RsaKey]:
    key = serialization.load_pem_public_key(data)
    if not isinstance(key, rsa.RSAPublicKey):
        return None
    return RsaKey(is_private=False, public_key=PublicKeyMaterial.from_key(key), key_obj=key)


# order matters: a request header also contains "BEGIN CERTIFICATE"
PEM_HEADERS = (
    ("BEGIN X509 CRL",              _load_crl),
    ("BEGIN CERTIFICATE REQUEST",   _load_request),
    ("BEGIN CERTIFICATE",           _load_certificate),
    ("BEGIN RSA PRIVATE KEY",       _load_private_key),
    ("BEGIN RSA PUBLIC KEY",        _load_public_key),
)


def classify(contents: Union[bytes, str]) -> Optional[Artifact]:
    """Work out what a file holds by looking at its first line.

    Args:
        contents: Raw file contents

    Returns:
        The decoded artifact, or None if the header is unknown or decoding fails
    """
    if isinstance(contents, str):
        contents = contents.encode("utf-8")

    first_line = contents.split(b"\n", 1)[0].decode("utf-8", errors="ignore")

    for marker, loader in PEM_HEADERS:
        if marker in first_line:
            try:
                return loader(contents)
            except (ValueError, TypeError, UnsupportedAlgorithm) as e:
                # encrypted keys land here too (TypeError: password required)
                logger.debug(f"Failed to decode '{marker}' data: {e}")
                return None

    return None


#
# Collector
#

class Collector:
    """Walks paths and keeps what it could classify, in discovery order."""

    def __init__(self, settings: Optional[Settings] = None):
        """
        Args: settings: Application settings
        """
        self.settings = settings or Settings()
        self._artifacts: Dict[str, Artifact] = {}  # path -> artifact, insertion ordered

        # Configure logging based on settings
        if self.settings.debug:
            logger.setLevel(logging.DEBUG)
        elif self.settings.verbose:
            logger.setLevel(logging.INFO)
        else:
            logger.setLevel(logging.WARNING)

    def collect(self, paths: Iterable[str]) -> "Collector":
        """
        Expand every path (directories recursively) and classify each file.
        Any OSError (missing path, unreadable file) propagates to the caller.
        """
        for path in paths:
            self._visit(path)
        return self

    def _visit(self, path: str) -> None:
        # follows symlinks: a dangling or looping link raises here
        st = os.stat(path)
        if stat.S_ISDIR(st.st_mode):
            for entry in os.listdir(path):
                self._visit(os.path.join(path, entry))
        elif stat.S_ISREG(st.st_mode):
            self._process_file(path, st.st_size)
        else:
            logger.debug(f"Skipping '{path}', not a regular file")

    def _process_file(self, path: str, size: int) -> None:
        artifact = None

        if size > self.settings.max_file_size:
            logger.info(f"Skipping '{path}', larger than maximum allowed ({self.settings.max_file_size} bytes)")
        else:
            logger.debug(f"Processing {path}")
            with open(path, "rb") as f:
                artifact = classify(f.read())

        if artifact is None:
            if os.path.basename(path) not in EXPECTED_NON_ARTIFACTS:
                print(f"WARNING: file {path} could not be interpreted")
            return

        self._artifacts[path] = artifact

    def items(self) -> Iterator[Tuple[str, Artifact]]:
        return iter(self._artifacts.items())

    def get(self, path: str) -> Optional[Artifact]:
        return self._artifacts.get(path)

    def __iter__(self) -> Iterator[str]:
        return iter(self._artifacts)

    def __len__(self) -> int:
        return len(self._artifacts)


#
# KeyExtractor
#

def extract_key(path: str, artifact: Artifact) -> Optional[KeyExtraction]:
    """What key does this artifact carry, and what would it like it called?"""
    if isinstance(artifact, RsaKey):
        if artifact.is_private:
            return KeyExtraction(artifact.public_key, NamePriority.PRIVATE_KEY, path)
        return KeyExtraction(artifact.public_key, NamePriority.PUBLIC_KEY, path)
    if isinstance(artifact, Certificate):
        return KeyExtraction(artifact.public_key, NamePriority.CERTIFICATE_SUBJECT, artifact.subject)
    if isinstance(artifact, Request):
        return KeyExtraction(artifact.public_key, NamePriority.REQUEST_SUBJECT, artifact.subject)
    # CRLs carry no key of their own
    return None


#
# KeyRegistry
#

class KeyRegistry:
    """Distinct public keys, the record that named each one, and the final names.

    Built once from every extraction and read-only afterwards.
    """

    def __init__(self,
                 records: Dict[PublicKeyMaterial, KeyRecord],
                 ordered_keys: List[PublicKeyMaterial],
                 names: Dict[PublicKeyMaterial, str]):
        self.records = records
        self.ordered_keys = ordered_keys
        self.names = names

    @classmethod
    def build(cls, extractions: Iterable[KeyExtraction]) -> "KeyRegistry":
        """Deduplicate keys and hand out unique names.

        For each key the winning record is the last one seen among those with
        the lowest priority number. Keys keep the position where they were
        first seen, whichever record ends up winning.

        Args:
            extractions: KeyExtractions, in discovery order

        Returns:
            The populated registry
        """
        records: Dict[PublicKeyMaterial, KeyRecord] = {}
        ordered_keys: List[PublicKeyMaterial] = []

        for extraction in extractions:
            current = records.get(extraction.key)
            if current is None:
                ordered_keys.append(extraction.key)
                records[extraction.key] = extraction
            elif extraction.priority <= current.priority:
                records[extraction.key] = extraction

        names: Dict[PublicKeyMaterial, str] = {}
        taken = set()
        for key in ordered_keys:
            label = records[key].label
            name = label
            suffix = 2
            while name in taken:
                name = f"{label} ({suffix})"
                suffix += 1
            taken.add(name)
            names[key] = f"key<{name}>"
            logger.debug(f"Named {names[key]} (priority {records[key].priority})")

        return cls(records, ordered_keys, names)

    def name_of(self, key: PublicKeyMaterial) -> str:
        return self.names[key]

    def __len__(self) -> int:
        return len(self.ordered_keys)


def build_registry(collector: Collector) -> KeyRegistry:
    """Run the extractor over everything collected and build the registry."""
    extractions = []
    for path, artifact in collector.items():
        try:
            extraction = extract_key(path, artifact)
        except Exception as e:
            logger.warning(f"Error extracting key from {path}: {e}")
            continue
        if extraction is not None:
            extractions.append(extraction)

    registry = KeyRegistry.build(extractions)
    logger.info(f"Found {len(registry)} distinct keys in {len(collector)} files")
    return registry


#
# SignatureResolver
#

def _verifies(artifact: SignedArtifact, key: PublicKeyMaterial) -> bool:
    public_key = key.key_obj
    if not isinstance(public_key, rsa.RSAPublicKey):
        return False
    try:
        public_key.verify(
            artifact.signature,
            artifact.signed_bytes,
            padding.PKCS1v15(),
            artifact.hash_algorithm
        )
    except (InvalidSignature, UnsupportedAlgorithm, ValueError, TypeError):
        return False
    return True


def signed_by(artifact: SignedArtifact, registry: KeyRegistry) -> str:
    """Name of the first registered key that verifies the artifact, else UNKNOWN_SIGNER."""
    for key in registry.ordered_keys:
        if _verifies(artifact, key):
            return registry.name_of(key)
    return UNKNOWN_SIGNER


#
# Reporter
#

def describe(artifact: Any, registry: KeyRegistry) -> str:
    """Human readable description of one artifact.

    Args:
        artifact: A classified artifact
        registry: The complete key registry

    Returns:
        Description text; continuation lines are indented two spaces
    """
    if isinstance(artifact, RsaKey):
        if artifact.is_private:
            return f"Private key for {registry.name_of(artifact.public_key)}"
        return f"Public key for {registry.name_of(artifact.public_key)}"

    if isinstance(artifact, Certificate):
        return "\n".join([
            f"Certificate for {artifact.subject}",
            f"  with {registry.name_of(artifact.public_key)}",
            f"  serial number {artifact.serial}",
            f"  issued by {artifact.issuer}",
            f"  signed by {signed_by(artifact, registry)}",
        ])

    if isinstance(artifact, Request):
        return "\n".join([
            f"Certificate request for {artifact.subject}",
            f"  with {registry.name_of(artifact.public_key)}",
            f"  signed by {signed_by(artifact, registry)}",
        ])

    if isinstance(artifact, Crl):
        if artifact.revoked_serials:
            serials = ", ".join(str(serial) for serial in artifact.revoked_serials)
            revoking = f"serial numbers [{serials}]"
        else:
            revoking = "nothing"
        return "\n".join([
            f"CRL revoking {revoking}",
            f"  issued by {artifact.issuer}",
            f"  signed by {signed_by(artifact, registry)}",
        ])

    return "Unknown"


def build_report(collector: Collector, registry: KeyRegistry) -> List[ReportEntry]:
    """Describe everything collected; entries that blow up are logged and dropped."""
    entries = []
    for path, artifact in collector.items():
        try:
            entries.append(ReportEntry(describe(artifact, registry), path))
        except Exception as e:
            logger.warning(f"Error describing {path}: {e}")
    return sorted(entries)


def render_text(entries: Iterable[ReportEntry]) -> str:
    chunks = []
    for entry in entries:
        chunks.append(f"{entry.path}:\n  {entry.description}\n\n")
    return "".join(chunks)


def render_json(entries: Iterable[ReportEntry]) -> str:
    return json.dumps(
        [{"path": entry.path, "description": entry.description} for entry in entries],
        indent=2
    )


#
# what goes on in CLI-land?
#
def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments.

    Returns: Parsed arguments

    """

    parser = argparse.ArgumentParser(
        description="Inventory PEM certificates, requests, CRLs and RSA keys"
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="store_true",
        help="Enable debug output"
    )
    parser.add_argument(
        "paths",
        metavar="PATHS",
        nargs="+",
        help="Files or directories to scan (directories are scanned recursively)"
    )
    parser.add_argument(
        "--max_file_size",
        "-m",
        type=int,
        default=MAX_FILE_SIZE,
        help="Maximum size in bytes of a file worth reading"
    )
    parser.add_argument(
        "-o",
        "--output",
        choices=["json", "text"],
        default="text",
        help="Output format (default: text)"
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose output"
    )
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)

    settings = Settings(
        max_file_size   = args.max_file_size,
        verbose         = args.verbose,
        debug           = args.debug,
        output_format   = args.output,
    )

    #
    # phase one: everything on disk, classified
    #
    collector = Collector(settings)
    try:
        collector.collect(args.paths)
    except OSError as e:
        logger.error(f"Error reading input: {e}")
        return 1

    #
    # phase two: all the keys, named... then describe with them
    #
    registry = build_registry(collector)
    entries  = build_report(collector, registry)

    if settings.output_format == "json":
        print(render_json(entries))
    else:
        sys.stdout.write(render_text(entries))

    return 0


if __name__ == "__main__":
    sys.exit(main())
