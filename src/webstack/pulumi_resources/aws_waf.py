import ipaddress

import pulumi
import pulumi_aws as aws

import webstack.aws_stack
from webstack.pulumi_resources import StrInput
from webstack.pulumi_resources.lib import waf_metric_name

BLOCK_LIST_PRIORITY = 0
MANAGED_RULE_GROUP_FIRST_PRIORITY = 10
RULE_PRIORITY_STEP = 10


def _visibility_config(metric_name: str) -> aws.wafv2.WebAclVisibilityConfigArgs:
    return aws.wafv2.WebAclVisibilityConfigArgs(
        cloudwatch_metrics_enabled=True,
        metric_name=metric_name,
        sampled_requests_enabled=True,
    )


def split_cidrs_by_version(cidrs: list[str]) -> dict[str, list[str]]:
    by_version: dict[str, list[str]] = {"IPV4": [], "IPV6": []}
    for cidr in cidrs:
        network = ipaddress.ip_network(cidr, strict=False)
        by_version[f"IPV{network.version}"].append(str(network))
    return {version: sorted(addresses) for version, addresses in by_version.items() if addresses}


class AWSWaf(pulumi.ComponentResource):
    """
    A regional web ACL in front of the load balancer.

    Rules run in priority order: the block list, then the AWS managed rule groups, then a
    per-source-IP rate limit. Anything not blocked is allowed.
    """

    name: str
    cfg: webstack.aws_stack.WAFConfig
    tags: dict[str, str]

    ip_sets: dict[str, aws.wafv2.IpSet]
    web_acl: aws.wafv2.WebAcl
    log_group: aws.cloudwatch.LogGroup

    def __init__(
        self,
        name: str,
        cfg: webstack.aws_stack.WAFConfig,
        resource_arn: StrInput,
        log_group_name: str,
        tags: dict[str, str],
        *args,
        **kwargs,
    ):
        super().__init__(f"webstack:{self.__class__.__name__}", name, *args, **kwargs)

        self.name = name
        self.cfg = cfg
        self.tags = tags
        self.ip_sets = {}

        if not log_group_name.startswith("aws-waf-logs-"):
            msg = f"WAF log group name must start with 'aws-waf-logs-': {log_group_name!r}"
            pulumi.error(msg, self)
            raise ValueError(msg)

        self.web_acl = aws.wafv2.WebAcl(
            name,
            name=name,
            description=f"webstack web ACL for {name}",
            scope="REGIONAL",
            default_action=aws.wafv2.WebAclDefaultActionArgs(allow=aws.wafv2.WebAclDefaultActionAllowArgs()),
            visibility_config=_visibility_config(waf_metric_name(name, "web-acl")),
            rules=self._define_rules(),
            tags=self.tags | {"Name": name},
            opts=pulumi.ResourceOptions(parent=self),
        )

        aws.wafv2.WebAclAssociation(
            f"{name}-lb",
            resource_arn=resource_arn,
            web_acl_arn=self.web_acl.arn,
            opts=pulumi.ResourceOptions(parent=self.web_acl),
        )

        self.log_group = aws.cloudwatch.LogGroup(
            f"{name}-waf-logs",
            name=log_group_name,
            retention_in_days=cfg.log_retention_days,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        aws.wafv2.WebAclLoggingConfiguration(
            f"{name}-logging",
            resource_arn=self.web_acl.arn,
            log_destination_configs=[self.log_group.arn],
            redacted_fields=[
                aws.wafv2.WebAclLoggingConfigurationRedactedFieldArgs(
                    single_header=aws.wafv2.WebAclLoggingConfigurationRedactedFieldSingleHeaderArgs(
                        name="authorization",
                    ),
                ),
                aws.wafv2.WebAclLoggingConfigurationRedactedFieldArgs(
                    single_header=aws.wafv2.WebAclLoggingConfigurationRedactedFieldSingleHeaderArgs(
                        name="cookie",
                    ),
                ),
            ],
            opts=pulumi.ResourceOptions(parent=self.web_acl),
        )

        self.register_outputs(
            {
                "web_acl_arn": self.web_acl.arn,
                "log_group_name": self.log_group.name,
            }
        )

    def _define_block_list_rules(self) -> list[aws.wafv2.WebAclRuleArgs]:
        rules = []

        for i, (version, addresses) in enumerate(split_cidrs_by_version(list(self.cfg.blocked_cidrs)).items()):
            rule_name = f"block-list-{version.lower()}"
            self.ip_sets[version] = aws.wafv2.IpSet(
                f"{self.name}-{rule_name}",
                name=f"{self.name}-{rule_name}",
                scope="REGIONAL",
                ip_address_version=version,
                addresses=addresses,
                tags=self.tags,
                opts=pulumi.ResourceOptions(parent=self),
            )

            rules.append(
                aws.wafv2.WebAclRuleArgs(
                    name=rule_name,
                    priority=BLOCK_LIST_PRIORITY + i,
                    action=aws.wafv2.WebAclRuleActionArgs(block=aws.wafv2.WebAclRuleActionBlockArgs()),
                    statement=aws.wafv2.WebAclRuleStatementArgs(
                        ip_set_reference_statement=aws.wafv2.WebAclRuleStatementIpSetReferenceStatementArgs(
                            arn=self.ip_sets[version].arn,
                        ),
                    ),
                    visibility_config=_visibility_config(waf_metric_name(self.name, rule_name)),
                )
            )

        return rules

    def _define_rules(self) -> list[aws.wafv2.WebAclRuleArgs]:
        rules = self._define_block_list_rules()

        priority = MANAGED_RULE_GROUP_FIRST_PRIORITY
        for group in self.cfg.managed_rule_groups:
            rules.append(
                aws.wafv2.WebAclRuleArgs(
                    name=group,
                    priority=priority,
                    override_action=aws.wafv2.WebAclRuleOverrideActionArgs(
                        none=aws.wafv2.WebAclRuleOverrideActionNoneArgs(),
                    ),
                    statement=aws.wafv2.WebAclRuleStatementArgs(
                        managed_rule_group_statement=aws.wafv2.WebAclRuleStatementManagedRuleGroupStatementArgs(
                            vendor_name="AWS",
                            name=group,
                        ),
                    ),
                    visibility_config=_visibility_config(waf_metric_name(self.name, group)),
                )
            )
            priority += RULE_PRIORITY_STEP

        rules.append(
            aws.wafv2.WebAclRuleArgs(
                name="rate-limit-per-ip",
                priority=priority,
                action=aws.wafv2.WebAclRuleActionArgs(block=aws.wafv2.WebAclRuleActionBlockArgs()),
                statement=aws.wafv2.WebAclRuleStatementArgs(
                    rate_based_statement=aws.wafv2.WebAclRuleStatementRateBasedStatementArgs(
                        limit=self.cfg.rate_limit,
                        aggregate_key_type="IP",
                    ),
                ),
                visibility_config=_visibility_config(waf_metric_name(self.name, "rate-limit-per-ip")),
            )
        )

        return rules
