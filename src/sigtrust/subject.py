from __future__ import annotations

from typing import Annotated, Any, Optional, Union
from urllib.parse import urlsplit, urlunsplit

from pydantic import (
    AnyUrl,
    BaseModel,
    ConfigDict,
    Discriminator,
    Tag,
    TypeAdapter,
    ValidationError,
    field_validator,
)
from pydantic.alias_generators import to_camel

_URL = TypeAdapter(AnyUrl)


def sanitize_url_prefix(value: Any) -> str:
    """Validate ``value`` as a URL and make sure its path ends with ``/``.

    ``https://github.com/kubewarden`` becomes ``https://github.com/kubewarden/`` so the
    prefix can no longer match ``https://github.com/kubewarden-malicious/``.
    """
    try:
        url = _URL.validate_python(value)
    except ValidationError as exc:
        reason = exc.errors()[0].get("msg", "invalid URL")
        raise ValueError(f"invalid URL {value!r}: {reason}") from None
    parts = urlsplit(str(url))
    path = parts.path
    if not path.endswith("/"):
        path = f"{path}/"
    return urlunsplit((parts.scheme, parts.netloc, path, parts.query, parts.fragment))


class SubjectEqual(BaseModel):
    equal: str

    model_config = ConfigDict(frozen=True, extra="forbid")

    def matches(self, claim: str) -> bool:
        return claim == self.equal


class SubjectUrlPrefix(BaseModel):
    url_prefix: str

    model_config = ConfigDict(
        frozen=True, extra="forbid", alias_generator=to_camel, populate_by_name=True
    )

    @field_validator("url_prefix", mode="before")
    @classmethod
    def _sanitize(cls, value: Any) -> str:
        return sanitize_url_prefix(value)

    def matches(self, claim: str) -> bool:
        return claim.startswith(self.url_prefix)


def _subject_tag(value: Any) -> Optional[str]:
    if isinstance(value, SubjectEqual):
        return "equal"
    if isinstance(value, SubjectUrlPrefix):
        return "urlPrefix"
    if isinstance(value, dict):
        if "equal" in value:
            return "equal"
        if "urlPrefix" in value or "url_prefix" in value:
            return "urlPrefix"
    return None


Subject = Annotated[
    Union[
        Annotated[SubjectEqual, Tag("equal")],
        Annotated[SubjectUrlPrefix, Tag("urlPrefix")],
    ],
    Discriminator(
        _subject_tag,
        custom_error_type="invalid_subject",
        custom_error_message="subject must be either {equal: <string>} or {urlPrefix: <url>}",
    ),
]


def matches(claim: str, subject: Union[SubjectEqual, SubjectUrlPrefix]) -> bool:
    return subject.matches(claim)
