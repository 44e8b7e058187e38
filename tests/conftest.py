from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Union

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from cryptography.x509.oid import NameOID

from sigtrust.errors import OracleError
from sigtrust.models import (
    CertificateAssertion,
    GenericIssuerAssertion,
    GithubActionAssertion,
    PubKeyAssertion,
)
from sigtrust.oracle import Oracle, VerificationResponse

Verdict = Union[bool, Exception]


def assertion_key(assertion: Any) -> str:
    if isinstance(assertion, PubKeyAssertion):
        return assertion.owner or "pubkey"
    if isinstance(assertion, GenericIssuerAssertion):
        return assertion.issuer
    if isinstance(assertion, GithubActionAssertion):
        return assertion.owner
    if isinstance(assertion, CertificateAssertion):
        return "certificate"
    raise TypeError(type(assertion).__name__)


class ScriptedOracle(Oracle):
    """Oracle stand-in answering by assertion key and recording every call."""

    def __init__(self, verdicts: Dict[str, Verdict]) -> None:
        self.verdicts = verdicts
        self.calls: List[str] = []
        self.images: List[str] = []

    def verify(self, assertion: Any, image: str) -> VerificationResponse:
        key = assertion_key(assertion)
        self.calls.append(key)
        self.images.append(image)
        verdict = self.verdicts[key]
        if isinstance(verdict, Exception):
            raise verdict
        return VerificationResponse(is_trusted=verdict, digest=f"sha256:{key}")


@pytest.fixture
def scripted_oracle():
    return ScriptedOracle


@pytest.fixture
def host_failure() -> OracleError:
    return OracleError("host unreachable")


@pytest.fixture(scope="session")
def signing_key() -> ec.EllipticCurvePrivateKey:
    return ec.generate_private_key(ec.SECP256R1())


@pytest.fixture(scope="session")
def public_key_pem(signing_key: ec.EllipticCurvePrivateKey) -> str:
    return (
        signing_key.public_key()
        .public_bytes(Encoding.PEM, PublicFormat.SubjectPublicKeyInfo)
        .decode("utf-8")
    )


@pytest.fixture(scope="session")
def certificate_pem(signing_key: ec.EllipticCurvePrivateKey) -> str:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "sigtrust test signer")])
    now = datetime.now(tz=timezone.utc)
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(signing_key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=1))
        .sign(signing_key, hashes.SHA256())
    )
    return cert.public_bytes(Encoding.PEM).decode("utf-8")
