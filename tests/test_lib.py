import pytest

from webstack.pulumi_resources.lib import dashify, lb_name, lb_name_prefix, validate_tags, waf_metric_name


def test_validate_tags_normal() -> None:
    tags = {
        "webstack/true-name": "myapp",
        "webstack/environment": "production",
        "Name": "myapp-production",
    }
    assert validate_tags(tags) == tags


def test_validate_tags_empty_value_allowed() -> None:
    assert validate_tags({"key": ""}) == {"key": ""}


def test_validate_tags_empty_key() -> None:
    with pytest.raises(ValueError, match="must not be empty"):
        validate_tags({"": "value"})


def test_validate_tags_reserved_prefix() -> None:
    with pytest.raises(ValueError, match="reserved 'aws:' prefix"):
        validate_tags({"AWS:cloudformation": "value"})


def test_validate_tags_key_too_long() -> None:
    with pytest.raises(ValueError, match="128-character limit"):
        validate_tags({"k" * 129: "value"})


def test_validate_tags_value_too_long() -> None:
    with pytest.raises(ValueError, match="256-character limit"):
        validate_tags({"key": "v" * 257})


def test_validate_tags_none_value() -> None:
    with pytest.raises(ValueError, match="must not be None"):
        validate_tags({"key": None})  # type: ignore


def test_validate_tags_too_many() -> None:
    with pytest.raises(ValueError, match="too many tags"):
        validate_tags({f"key{i}": "v" for i in range(51)})


def test_validate_tags_counts_reserved_keys() -> None:
    tags = {f"key{i}": "v" for i in range(48)}
    assert validate_tags(tags, ["Name", "webstack/true-name"]) == tags

    with pytest.raises(ValueError, match=r"too many tags \(48 given, 3 more added by webstack\)"):
        validate_tags(tags, ["Name", "webstack/true-name", "webstack/environment"])


def test_validate_tags_reserved_keys_overlap() -> None:
    tags = {f"key{i}": "v" for i in range(49)} | {"Name": "mine"}
    assert validate_tags(tags, ["Name"]) == tags


def test_validate_tags_stringifies_values() -> None:
    assert validate_tags({"cost-center": 1234}) == {"cost-center": "1234"}  # type: ignore


def test_dashify() -> None:
    assert dashify("puppy.party") == "puppy-party"
    assert dashify("*.puppy.party") == "wildcard-puppy-party"


def test_waf_metric_name() -> None:
    assert waf_metric_name("testing01-staging", "rate-limit-per-ip") == "Testing01StagingRateLimitPerIp"
    assert waf_metric_name("AWSManagedRulesCommonRuleSet") == "AWSManagedRulesCommonRuleSet"


def test_waf_metric_name_truncates() -> None:
    assert len(waf_metric_name("a" * 200)) == 128


def test_waf_metric_name_empty() -> None:
    with pytest.raises(ValueError, match="cannot build a metric name"):
        waf_metric_name("--", "..")


def test_lb_name_prefix() -> None:
    assert lb_name_prefix("testing01-staging") == "testin"
    assert lb_name_prefix("a-b") == "ab"
    assert lb_name_prefix("---") == "web"


def test_lb_name() -> None:
    assert lb_name("testing01-staging") == "testing01-staging"
    assert lb_name("testing01-staging", "web") == "testing01-staging-web"
    assert lb_name("a-very-long-stack-name-for-testing-production") == "a-very-long-stack-name-for-testi"
    assert len(lb_name("x" * 40, "y")) <= 32
    # trailing dashes are not allowed by ELB
    assert not lb_name("abcdefghijklmnopqrstuvwxyz01234-x").endswith("-")
