import json

import pytest

from sigtrust.errors import InvalidConfigError, SchemaError
from sigtrust.models import (
    LATEST_API_VERSION,
    AnyOf,
    CertificateAssertion,
    GenericIssuerAssertion,
    GithubActionAssertion,
    InvalidConfig,
    LatestVerificationConfig,
    PubKeyAssertion,
    UnsupportedConfig,
    VerificationConfigV1,
    VersionedConfig,
    classify_verification_config,
    dump_verification_config,
    parse_verification_config,
    parse_verification_config_v1,
)
from sigtrust.subject import SubjectEqual, SubjectUrlPrefix


def _github(owner: str) -> dict:
    return {"kind": "githubAction", "owner": owner}


def test_latest_alias_points_at_v1() -> None:
    assert LATEST_API_VERSION == "v1"
    assert LatestVerificationConfig is VerificationConfigV1


def test_parse_v1_document_with_every_assertion_kind(
    public_key_pem: str, certificate_pem: str
) -> None:
    parsed = parse_verification_config(
        {
            "apiVersion": "v1",
            "allOf": [
                {"kind": "pubKey", "owner": "ops", "key": public_key_pem},
                {
                    "kind": "genericIssuer",
                    "issuer": "https://token.actions.githubusercontent.com",
                    "subject": {"urlPrefix": "https://github.com/kubewarden"},
                    "annotations": {"env": "prod"},
                },
            ],
            "anyOf": {
                "signatures": [
                    {"kind": "githubAction", "owner": "kubewarden", "repo": "policy-server"},
                    {
                        "kind": "certificate",
                        "certificate": certificate_pem,
                        "certificateChain": [certificate_pem],
                        "requireRekorBundle": False,
                    },
                ]
            },
        }
    )
    assert isinstance(parsed, VersionedConfig)
    assert parsed.api_version == "v1"
    all_of = parsed.config.all_of
    assert isinstance(all_of[0], PubKeyAssertion)
    assert all_of[0].owner == "ops"
    assert isinstance(all_of[1], GenericIssuerAssertion)
    assert isinstance(all_of[1].subject, SubjectUrlPrefix)
    assert all_of[1].subject.url_prefix == "https://github.com/kubewarden/"
    assert all_of[1].annotations == {"env": "prod"}
    any_of = parsed.config.any_of
    assert any_of.minimum_matches == 1
    assert isinstance(any_of.signatures[0], GithubActionAssertion)
    assert any_of.signatures[0].repo == "policy-server"
    certificate = any_of.signatures[1]
    assert isinstance(certificate, CertificateAssertion)
    assert certificate.require_rekor_bundle is False
    assert certificate.certificate_chain == (certificate_pem,)


def test_any_of_minimum_matches_defaults_to_one() -> None:
    group = AnyOf.model_validate({"signatures": [_github("a")]})
    assert group.minimum_matches == 1


def test_any_of_minimum_matches_must_be_positive() -> None:
    with pytest.raises(SchemaError) as info:
        parse_verification_config(
            {"apiVersion": "v1", "anyOf": {"minimumMatches": 0, "signatures": [_github("a")]}}
        )
    assert "anyOf.minimumMatches" in info.value.fields


def test_any_of_minimum_matches_rejects_booleans() -> None:
    with pytest.raises(SchemaError) as info:
        parse_verification_config(
            {"apiVersion": "v1", "anyOf": {"minimumMatches": True, "signatures": [_github("a")]}}
        )
    assert "anyOf.minimumMatches" in info.value.fields


def test_any_of_minimum_matches_from_yaml_integer() -> None:
    parsed = parse_verification_config(
        "apiVersion: v1\nanyOf:\n  minimumMatches: 2\n  signatures:\n"
        "    - {kind: githubAction, owner: a}\n    - {kind: githubAction, owner: b}\n"
    )
    assert parsed.config.any_of.minimum_matches == 2


def test_annotations_are_read_only_after_parse() -> None:
    parsed = parse_verification_config(
        {
            "apiVersion": "v1",
            "allOf": [{**_github("a"), "annotations": {"env": "prod"}}],
        }
    )
    annotations = parsed.config.all_of[0].annotations
    with pytest.raises(TypeError):
        annotations["env"] = "dev"
    assert annotations == {"env": "prod"}
    assert dump_verification_config(parsed)["allOf"][0]["annotations"] == {"env": "prod"}


def test_annotations_do_not_alias_caller_dict() -> None:
    source = {"env": "prod"}
    assertion = GithubActionAssertion(owner="a", annotations=source)
    source["env"] = "dev"
    assert assertion.annotations == {"env": "prod"}


def test_certificate_requires_rekor_bundle_by_default(certificate_pem: str) -> None:
    assertion = CertificateAssertion(certificate=certificate_pem)
    assert assertion.require_rekor_bundle is True
    assert assertion.certificate_chain is None


def test_unknown_top_level_field_is_named() -> None:
    with pytest.raises(SchemaError) as info:
        parse_verification_config({"apiVersion": "v1", "allOf": [_github("a")], "bogusField": 1})
    assert "bogusField" in str(info.value)
    assert info.value.fields == ["bogusField"]


def test_unknown_nested_field_is_named() -> None:
    with pytest.raises(SchemaError) as info:
        parse_verification_config(
            {
                "apiVersion": "v1",
                "allOf": [{"kind": "githubAction", "owner": "a", "branch": "main"}],
            }
        )
    assert "branch" in str(info.value)
    assert any(field.endswith("branch") for field in info.value.fields)


def test_unknown_assertion_kind_is_rejected() -> None:
    with pytest.raises(SchemaError):
        parse_verification_config({"apiVersion": "v1", "allOf": [{"kind": "magic", "owner": "a"}]})


def test_malformed_url_subject_fails_at_parse_time() -> None:
    with pytest.raises(SchemaError):
        parse_verification_config(
            {
                "apiVersion": "v1",
                "allOf": [
                    {
                        "kind": "genericIssuer",
                        "issuer": "https://accounts.google.com",
                        "subject": {"urlPrefix": "::not-a-url::"},
                    }
                ],
            }
        )


def test_malformed_public_key_is_a_schema_error() -> None:
    with pytest.raises(SchemaError) as info:
        parse_verification_config(
            {"apiVersion": "v1", "allOf": [{"kind": "pubKey", "key": "not a key"}]}
        )
    assert "PEM" in str(info.value)


def test_malformed_certificate_chain_is_a_schema_error(certificate_pem: str) -> None:
    with pytest.raises(SchemaError):
        parse_verification_config(
            {
                "apiVersion": "v1",
                "anyOf": {
                    "signatures": [
                        {
                            "kind": "certificate",
                            "certificate": certificate_pem,
                            "certificateChain": ["garbage"],
                        }
                    ]
                },
            }
        )


def test_unsupported_version_parses_without_validating_body() -> None:
    document = {"apiVersion": "v999", "whatever": {"nested": True}}
    parsed = parse_verification_config(document)
    assert isinstance(parsed, UnsupportedConfig)
    assert parsed.api_version == "v999"
    assert parsed.document == document


def test_missing_api_version_is_invalid_not_unsupported() -> None:
    with pytest.raises(InvalidConfigError):
        parse_verification_config({"allOf": [_github("a")]})


@pytest.mark.parametrize("raw", [[1, 2], "just text", 42, None, {"apiVersion": 2}])
def test_classify_reports_non_versioned_values_as_invalid(raw) -> None:
    outcome = classify_verification_config(raw)
    assert isinstance(outcome, InvalidConfig)
    assert outcome.error


def test_classify_distinguishes_three_outcomes() -> None:
    assert isinstance(
        classify_verification_config({"apiVersion": "v1", "allOf": [_github("a")]}),
        VersionedConfig,
    )
    assert isinstance(classify_verification_config({"apiVersion": "v2"}), UnsupportedConfig)
    invalid = classify_verification_config({"apiVersion": "v1", "bogusField": 1})
    assert isinstance(invalid, InvalidConfig)
    assert invalid.errors[0]["field"] == "bogusField"


def test_parse_accepts_yaml_and_json_text() -> None:
    yaml_text = """
apiVersion: v1
anyOf:
  minimumMatches: 1
  signatures:
    - kind: genericIssuer
      issuer: https://accounts.google.com
      subject:
        equal: release@example.com
"""
    from_yaml = parse_verification_config(yaml_text)
    from_json = parse_verification_config(json.dumps(dump_verification_config(from_yaml)))
    assert from_yaml == from_json
    subject = from_yaml.config.any_of.signatures[0].subject
    assert subject == SubjectEqual(equal="release@example.com")


def test_dump_uses_camel_case_and_omits_unset_fields() -> None:
    parsed = parse_verification_config(
        {"apiVersion": "v1", "anyOf": {"minimumMatches": 2, "signatures": [_github("a")]}}
    )
    assert dump_verification_config(parsed) == {
        "apiVersion": "v1",
        "anyOf": {"minimumMatches": 2, "signatures": [{"kind": "githubAction", "owner": "a"}]},
    }


def test_dump_of_unsupported_preserves_document() -> None:
    document = {"apiVersion": "v7", "allOf": "opaque"}
    assert dump_verification_config(parse_verification_config(document)) == document


def test_parse_v1_body_without_version() -> None:
    body = parse_verification_config_v1({"allOf": [_github("a")]})
    assert body.all_of == (GithubActionAssertion(owner="a"),)
    assert not body.is_empty()
    assert VerificationConfigV1().is_empty()
