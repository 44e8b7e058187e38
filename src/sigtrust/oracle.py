from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.request import Request, urlopen

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from sigtrust.errors import OracleError
from sigtrust.models import (
    CertificateAssertion,
    GenericIssuerAssertion,
    GithubActionAssertion,
    PubKeyAssertion,
)
from sigtrust.subject import SubjectEqual, SubjectUrlPrefix, sanitize_url_prefix

logger = logging.getLogger(__name__)

HOST_BINDING = "kubewarden"
HOST_NAMESPACE = "oci"
VERIFY_OPERATION = "v2/verify"

# (binding, namespace, operation, payload) -> response bytes
Transport = Callable[[str, str, str, bytes], bytes]


class VerificationResponse(BaseModel):
    is_trusted: bool
    digest: str

    model_config = ConfigDict(frozen=True, strict=True)


class KeylessInfo(BaseModel):
    issuer: str
    subject: str

    model_config = ConfigDict(frozen=True, extra="forbid")


class KeylessPrefixInfo(BaseModel):
    issuer: str
    url_prefix: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    @field_validator("url_prefix", mode="before")
    @classmethod
    def _sanitize(cls, value: Any) -> str:
        return sanitize_url_prefix(value)


class Oracle:
    """Answers one assertion for one image with a trust verdict."""

    def verify(self, assertion: Any, image: str) -> VerificationResponse:
        raise NotImplementedError


def _pem_bytes(pem: str) -> List[int]:
    return list(pem.encode("utf-8"))


def pub_keys_request(
    image: str, pub_keys: Sequence[str], annotations: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    return {
        "type": "SigstorePubKeyVerify",
        "image": image,
        "pub_keys": list(pub_keys),
        "annotations": annotations,
    }


def keyless_request(
    image: str, keyless: Sequence[KeylessInfo], annotations: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    return {
        "type": "SigstoreKeylessVerify",
        "image": image,
        "keyless": [k.model_dump() for k in keyless],
        "annotations": annotations,
    }


def keyless_prefix_request(
    image: str,
    keyless_prefix: Sequence[KeylessPrefixInfo],
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "type": "SigstoreKeylessPrefixVerify",
        "image": image,
        "keyless_prefix": [k.model_dump() for k in keyless_prefix],
        "annotations": annotations,
    }


def github_actions_request(
    image: str,
    owner: str,
    repo: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "type": "SigstoreGithubActionsVerify",
        "image": image,
        "owner": owner,
        "repo": repo,
        "annotations": annotations,
    }


def certificate_request(
    image: str,
    certificate: str,
    certificate_chain: Optional[Sequence[str]] = None,
    require_rekor_bundle: bool = True,
    annotations: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    return {
        "type": "SigstoreCertificateVerify",
        "image": image,
        "certificate": _pem_bytes(certificate),
        "certificate_chain": (
            [_pem_bytes(c) for c in certificate_chain] if certificate_chain is not None else None
        ),
        "require_rekor_bundle": require_rekor_bundle,
        "annotations": annotations,
    }


def build_verification_request(assertion: Any, image: str) -> Dict[str, Any]:
    annotations = dict(assertion.annotations) if assertion.annotations is not None else None
    if isinstance(assertion, PubKeyAssertion):
        return pub_keys_request(image, [assertion.key], annotations)
    if isinstance(assertion, GenericIssuerAssertion):
        subject = assertion.subject
        if isinstance(subject, SubjectEqual):
            info = KeylessInfo(issuer=assertion.issuer, subject=subject.equal)
            return keyless_request(image, [info], annotations)
        if isinstance(subject, SubjectUrlPrefix):
            prefix = KeylessPrefixInfo(issuer=assertion.issuer, url_prefix=subject.url_prefix)
            return keyless_prefix_request(image, [prefix], annotations)
        raise TypeError(f"unknown subject type: {type(subject).__name__}")
    if isinstance(assertion, GithubActionAssertion):
        return github_actions_request(image, assertion.owner, assertion.repo, annotations)
    if isinstance(assertion, CertificateAssertion):
        return certificate_request(
            image,
            assertion.certificate,
            assertion.certificate_chain,
            assertion.require_rekor_bundle,
            annotations,
        )
    raise TypeError(f"unknown assertion type: {type(assertion).__name__}")


def decode_verification_response(raw: bytes) -> VerificationResponse:
    try:
        return VerificationResponse.model_validate_json(raw)
    except ValidationError as exc:
        raise OracleError(f"error parsing the verification response: {exc}") from exc


class HostOracle(Oracle):
    """Sends one ``v2/verify`` host call per assertion through ``transport``."""

    def __init__(
        self,
        transport: Transport,
        *,
        binding: str = HOST_BINDING,
        namespace: str = HOST_NAMESPACE,
        operation: str = VERIFY_OPERATION,
    ) -> None:
        self._transport = transport
        self.binding = binding
        self.namespace = namespace
        self.operation = operation

    @classmethod
    def from_settings(cls, settings: Any) -> "HostOracle":
        if not settings.host_url:
            raise OracleError("no verification host configured: set SIGTRUST_HOST_URL")
        try:
            transport = HttpTransport(
                settings.host_url,
                timeout=settings.timeout_seconds,
                allow_insecure=settings.allow_insecure,
            )
        except ValueError as exc:
            raise OracleError(f"invalid verification host: {exc}") from exc
        return cls(transport)

    def verify(self, assertion: Any, image: str) -> VerificationResponse:
        return self.call(build_verification_request(assertion, image))

    def call(self, request: Dict[str, Any]) -> VerificationResponse:
        operation = f"{self.namespace}.{self.operation}"
        try:
            payload = json.dumps(request, sort_keys=True).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise OracleError(
                f"error serializing the verification request: {exc}", operation
            ) from exc
        try:
            raw = self._transport(self.binding, self.namespace, self.operation, payload)
        except OracleError:
            raise
        except Exception as exc:
            logger.warning("host call %s failed: %s", operation, exc)
            raise OracleError(f"error invoking host {operation}: {exc}", operation) from exc
        return decode_verification_response(raw)

    def verify_pub_keys_image(
        self, image: str, pub_keys: Sequence[str], annotations: Optional[Dict[str, str]] = None
    ) -> VerificationResponse:
        return self.call(pub_keys_request(image, pub_keys, annotations))

    def verify_keyless_exact_match(
        self,
        image: str,
        keyless: Sequence[KeylessInfo],
        annotations: Optional[Dict[str, str]] = None,
    ) -> VerificationResponse:
        return self.call(keyless_request(image, keyless, annotations))

    def verify_keyless_prefix_match(
        self,
        image: str,
        keyless_prefix: Sequence[KeylessPrefixInfo],
        annotations: Optional[Dict[str, str]] = None,
    ) -> VerificationResponse:
        return self.call(keyless_prefix_request(image, keyless_prefix, annotations))

    def verify_keyless_github_actions(
        self,
        image: str,
        owner: str,
        repo: Optional[str] = None,
        annotations: Optional[Dict[str, str]] = None,
    ) -> VerificationResponse:
        return self.call(github_actions_request(image, owner, repo, annotations))

    def verify_certificate(
        self,
        image: str,
        certificate: str,
        certificate_chain: Optional[Sequence[str]] = None,
        require_rekor_bundle: bool = True,
        annotations: Optional[Dict[str, str]] = None,
    ) -> VerificationResponse:
        return self.call(
            certificate_request(
                image, certificate, certificate_chain, require_rekor_bundle, annotations
            )
        )


class HttpTransport:
    """Delivers host calls as ``POST {base_url}/{binding}/{namespace}/{operation}``."""

    def __init__(self, base_url: str, timeout: float = 30.0, allow_insecure: bool = False) -> None:
        if base_url.startswith("http://"):
            if not allow_insecure:
                raise ValueError("insecure host URL: only https:// is allowed")
        elif not base_url.startswith("https://"):
            raise ValueError(f"unsupported host URL: {base_url}")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

    def __call__(self, binding: str, namespace: str, operation: str, payload: bytes) -> bytes:
        url = f"{self.base_url}/{binding}/{namespace}/{operation}"
        request = Request(
            url,
            data=payload,
            method="POST",
            headers={"Content-Type": "application/json"},
        )
        logger.debug("POST %s (%d bytes)", url, len(payload))
        with urlopen(request, timeout=self.timeout) as response:  # nosec B310 - configured host
            return response.read()


class ReplayTransport:
    """Answers host calls from recorded verdicts.

    Each entry is ``{"match": {...}, "response": {"is_trusted": ..., "digest": ...}}``;
    the first entry whose ``match`` items all equal the request fields wins.
    """

    def __init__(self, entries: List[Dict[str, Any]]) -> None:
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict):
                raise ValueError(f"verdict entry {index} must be an object")
            if not isinstance(entry.get("match"), dict):
                raise ValueError(f"verdict entry {index} missing match object")
            if not isinstance(entry.get("response"), dict):
                raise ValueError(f"verdict entry {index} missing response object")
        self.entries = entries

    @classmethod
    def from_file(cls, path: str) -> "ReplayTransport":
        with Path(path).open("r", encoding="utf-8") as f:
            payload = json.load(f)
        entries = payload.get("verdicts") if isinstance(payload, dict) else payload
        if not isinstance(entries, list):
            raise ValueError("verdicts file must be a list or an object with verdicts[]")
        return cls(entries)

    def __call__(self, binding: str, namespace: str, operation: str, payload: bytes) -> bytes:
        request = json.loads(payload.decode("utf-8"))
        for entry in self.entries:
            if all(request.get(k) == v for k, v in entry["match"].items()):
                return json.dumps(entry["response"]).encode("utf-8")
        raise OracleError(
            f"no recorded verdict for {request.get('type')} request on {request.get('image')}",
            f"{namespace}.{operation}",
        )
