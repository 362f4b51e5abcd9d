import pulumi
import pytest

from webstack.aws_stack import WAFConfig
from webstack.pulumi_resources.aws_waf import AWSWaf, split_cidrs_by_version

TAGS = {"webstack/true-name": "testing01"}
LB_ARN = "arn:aws:elasticloadbalancing:us-east-2:123456789012:loadbalancer/app/testing01-staging/abc"


def test_split_cidrs_by_version() -> None:
    assert split_cidrs_by_version([]) == {}
    assert split_cidrs_by_version(["203.0.113.7", "198.51.100.0/24", "2001:db8::/32"]) == {
        "IPV4": ["198.51.100.0/24", "203.0.113.7/32"],
        "IPV6": ["2001:db8::/32"],
    }


def test_bad_log_group_name(pulumi_mocks) -> None:
    @pulumi.runtime.test
    def build():
        with pytest.raises(ValueError, match="must start with 'aws-waf-logs-'"):
            AWSWaf("testing01-staging", WAFConfig(), LB_ARN, "testing01-staging-waf", TAGS)

    build()


def test_define_waf(pulumi_mocks) -> None:
    @pulumi.runtime.test
    def build():
        waf = AWSWaf("testing01-staging", WAFConfig(rate_limit=500), LB_ARN, "aws-waf-logs-testing01-staging", TAGS)
        assert waf.ip_sets == {}

    build()

    (acl,) = pulumi_mocks.of_type("aws:wafv2/webAcl:WebAcl")
    assert acl.inputs["scope"] == "REGIONAL"
    assert "allow" in acl.inputs["defaultAction"]

    rules = acl.inputs["rules"]
    assert [r["name"] for r in rules] == [
        "AWSManagedRulesCommonRuleSet",
        "AWSManagedRulesKnownBadInputsRuleSet",
        "AWSManagedRulesAmazonIpReputationList",
        "rate-limit-per-ip",
    ]
    assert [r["priority"] for r in rules] == [10, 20, 30, 40]
    assert rules[0]["statement"]["managedRuleGroupStatement"]["vendorName"] == "AWS"
    assert rules[-1]["statement"]["rateBasedStatement"] == {"limit": 500, "aggregateKeyType": "IP"}
    assert rules[-1]["visibilityConfig"]["metricName"] == "Testing01StagingRateLimitPerIp"

    (association,) = pulumi_mocks.of_type("aws:wafv2/webAclAssociation:WebAclAssociation")
    assert association.inputs["resourceArn"] == LB_ARN

    log_group = pulumi_mocks.named("testing01-staging-waf-logs")
    assert log_group.inputs["name"] == "aws-waf-logs-testing01-staging"
    assert log_group.inputs["retentionInDays"] == 90

    logging = pulumi_mocks.named("testing01-staging-logging")
    assert [f["singleHeader"]["name"] for f in logging.inputs["redactedFields"]] == ["authorization", "cookie"]


def test_block_list(pulumi_mocks) -> None:
    cfg = WAFConfig(managed_rule_groups=[], blocked_cidrs=["203.0.113.0/24", "2001:db8::/32"])

    @pulumi.runtime.test
    def build():
        waf = AWSWaf("testing01-staging", cfg, LB_ARN, "aws-waf-logs-testing01-staging", TAGS)
        assert sorted(waf.ip_sets) == ["IPV4", "IPV6"]

    build()

    ipv4 = pulumi_mocks.named("testing01-staging-block-list-ipv4")
    assert ipv4.inputs["ipAddressVersion"] == "IPV4"
    assert ipv4.inputs["addresses"] == ["203.0.113.0/24"]

    (acl,) = pulumi_mocks.of_type("aws:wafv2/webAcl:WebAcl")
    rules = acl.inputs["rules"]
    assert [(r["name"], r["priority"]) for r in rules] == [
        ("block-list-ipv4", 0),
        ("block-list-ipv6", 1),
        ("rate-limit-per-ip", 10),
    ]
    assert "block" in rules[0]["action"]
