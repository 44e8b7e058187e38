"""Per-kind verification calls for policies that compose checks by hand.

Each function is exactly one host call. Without an explicit ``oracle`` the host is
taken from ``HostSettings`` (``SIGTRUST_HOST_URL`` and friends).
"""

from __future__ import annotations

from typing import Dict, Optional, Sequence

from sigtrust.oracle import HostOracle, KeylessInfo, KeylessPrefixInfo, VerificationResponse
from sigtrust.settings import HostSettings


def _host(oracle: Optional[HostOracle]) -> HostOracle:
    return oracle if oracle is not None else HostOracle.from_settings(HostSettings())


def verify_pub_keys_image(
    image: str,
    pub_keys: Sequence[str],
    annotations: Optional[Dict[str, str]] = None,
    *,
    oracle: Optional[HostOracle] = None,
) -> VerificationResponse:
    return _host(oracle).verify_pub_keys_image(image, pub_keys, annotations)


def verify_keyless_exact_match(
    image: str,
    keyless: Sequence[KeylessInfo],
    annotations: Optional[Dict[str, str]] = None,
    *,
    oracle: Optional[HostOracle] = None,
) -> VerificationResponse:
    return _host(oracle).verify_keyless_exact_match(image, keyless, annotations)


def verify_keyless_prefix_match(
    image: str,
    keyless_prefix: Sequence[KeylessPrefixInfo],
    annotations: Optional[Dict[str, str]] = None,
    *,
    oracle: Optional[HostOracle] = None,
) -> VerificationResponse:
    return _host(oracle).verify_keyless_prefix_match(image, keyless_prefix, annotations)


def verify_keyless_github_actions(
    image: str,
    owner: str,
    repo: Optional[str] = None,
    annotations: Optional[Dict[str, str]] = None,
    *,
    oracle: Optional[HostOracle] = None,
) -> VerificationResponse:
    return _host(oracle).verify_keyless_github_actions(image, owner, repo, annotations)


def verify_certificate(
    image: str,
    certificate: str,
    certificate_chain: Optional[Sequence[str]] = None,
    require_rekor_bundle: bool = True,
    annotations: Optional[Dict[str, str]] = None,
    *,
    oracle: Optional[HostOracle] = None,
) -> VerificationResponse:
    return _host(oracle).verify_certificate(
        image, certificate, certificate_chain, require_rekor_bundle, annotations
    )
