import collections.abc
import re

_AWS_TAG_KEY_MAX_LENGTH = 128
_AWS_TAG_VALUE_MAX_LENGTH = 256
_AWS_MAX_TAGS = 50
_WAF_METRIC_NAME_MAX_LENGTH = 128
_AWS_LB_NAME_MAX_LENGTH = 32

_NON_ALPHANUMERIC = re.compile(r"[^A-Za-z0-9]")


def validate_tags(tags: dict[str, str], reserved_keys: collections.abc.Iterable[str] = ()) -> dict[str, str]:
    """Validate user-supplied resource tags against the AWS tagging rules.

    Keys must be non-empty, at most 128 characters and must not use the reserved
    'aws:' prefix. Values may be empty but are limited to 256 characters. A resource
    carries at most 50 tags, counting any `reserved_keys` added on top of the user tags.

    Returns the tags with keys and values converted to strings.
    """
    total = len(set(tags) | set(reserved_keys))
    if total > _AWS_MAX_TAGS:
        msg = (
            f"too many tags ({len(tags)} given, {total - len(tags)} more added by webstack); "
            f"AWS allows at most {_AWS_MAX_TAGS} per resource"
        )
        raise ValueError(msg)
    for key, value in tags.items():
        if not key:
            msg = "tag key must not be empty"
            raise ValueError(msg)
        if key.lower().startswith("aws:"):
            msg = f"tag key uses reserved 'aws:' prefix: {key!r}"
            raise ValueError(msg)
        if len(key) > _AWS_TAG_KEY_MAX_LENGTH:
            msg = f"tag key exceeds AWS 128-character limit ({len(key)} chars): {key!r}"
            raise ValueError(msg)
        if value is None:
            msg = f"tag value must not be None: key={key}"
            raise ValueError(msg)
        if len(str(value)) > _AWS_TAG_VALUE_MAX_LENGTH:
            msg = f"tag value exceeds AWS 256-character limit ({len(str(value))} chars): key={key}"
            raise ValueError(msg)
    return {str(k): str(v) for k, v in tags.items()}


def dashify(domain: str) -> str:
    return domain.replace(".", "-").replace("*", "wildcard")


def waf_metric_name(*parts: str) -> str:
    """Build a CloudWatch metric name accepted by WAFv2 (alphanumeric only)."""
    name = "".join(w[:1].upper() + w[1:] for p in parts for w in _NON_ALPHANUMERIC.split(p))
    if not name:
        msg = f"cannot build a metric name from {parts!r}"
        raise ValueError(msg)
    return name[:_WAF_METRIC_NAME_MAX_LENGTH]


def lb_name_prefix(compound_name: str) -> str:
    # name_prefix on load balancers and target groups is limited to 6 characters
    prefix = _NON_ALPHANUMERIC.sub("", compound_name)[:6]
    return prefix or "web"


def lb_name(compound_name: str, suffix: str = "") -> str:
    name = f"{compound_name}-{suffix}" if suffix else compound_name
    name = re.sub(r"[^A-Za-z0-9-]", "-", name)[:_AWS_LB_NAME_MAX_LENGTH]
    return name.strip("-")
