import re

from cilikube.exceptions import ValidationError

_DNS1123_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_DNS1123_SUBDOMAIN = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?(\.[a-z0-9]([-a-z0-9]*[a-z0-9])?)*$")

NAMESPACE_MAX_LENGTH = 63
NAME_MAX_LENGTH = 253


def is_valid_namespace(value: str | None) -> bool:
    return bool(value) and len(value) <= NAMESPACE_MAX_LENGTH and bool(_DNS1123_LABEL.match(value))  # type: ignore[arg-type]


def is_valid_resource_name(value: str | None) -> bool:
    return bool(value) and len(value) <= NAME_MAX_LENGTH and bool(_DNS1123_SUBDOMAIN.match(value))  # type: ignore[arg-type]


def validate_namespace(value: str | None) -> str:
    if not is_valid_namespace(value):
        raise ValidationError(
            f"invalid namespace {value!r}: must be a DNS-1123 label of at most {NAMESPACE_MAX_LENGTH} characters"
        )
    return value  # type: ignore[return-value]


def validate_resource_name(value: str | None, what: str = "name") -> str:
    if not is_valid_resource_name(value):
        raise ValidationError(
            f"invalid {what} {value!r}: must be a DNS-1123 subdomain of at most {NAME_MAX_LENGTH} characters"
        )
    return value  # type: ignore[return-value]
