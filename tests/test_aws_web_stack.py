import dataclasses

import pulumi

import webstack.aws_stack
from webstack.pulumi_resources.aws_web_stack import AWSWebStack


def test_define_web_stack(pulumi_mocks, aws_stack) -> None:
    @pulumi.runtime.test
    def build():
        web = AWSWebStack(aws_stack)

        assert web.required_tags["webstack/managed-by"] == "webstack.pulumi_resources.aws_web_stack"
        assert web.log_bucket is not None
        assert web.waf is not None
        assert sorted(web.app_groups) == ["web"]
        assert web.load_balancer.https_listener is not None
        assert web.dns.site_urls() == {"main": ["https://puppy.party", "https://www.puppy.party"]}
        assert set(web.vpc.endpoints) == {"s3"}

    build()

    (vpc,) = pulumi_mocks.of_type("aws:ec2/vpc:Vpc")
    assert vpc.inputs["cidrBlock"] == str(aws_stack.vpc_cidr())
    assert len(pulumi_mocks.of_type("aws:ec2/subnet:Subnet")) == 4
    assert len(pulumi_mocks.of_type("aws:ec2/natGateway:NatGateway")) == 2

    https_nacl = pulumi_mocks.named("testing01-staging-public-ingress-rule-2000")
    assert (https_nacl.inputs["fromPort"], https_nacl.inputs["cidrBlock"]) == (443, "0.0.0.0/0")
    http_nacl = pulumi_mocks.named("testing01-staging-public-ingress-rule-2500")
    assert http_nacl.inputs["fromPort"] == 80
    app_nacl = pulumi_mocks.named("testing01-staging-private-ingress-rule-2000")
    assert (app_nacl.inputs["fromPort"], app_nacl.inputs["cidrBlock"]) == (8080, str(aws_stack.vpc_cidr()))
    assert pulumi_mocks.named("testing01-staging-public-egress-rule-2000").inputs["fromPort"] == 8080

    (lb,) = pulumi_mocks.of_type("aws:lb/loadBalancer:LoadBalancer")
    assert lb.inputs["internal"] is False
    assert lb.inputs["enableDeletionProtection"] is False
    assert lb.inputs["accessLogs"]["bucket"].startswith("webstack-testing01-staging-logs-")

    (rule,) = pulumi_mocks.of_type("aws:lb/listenerRule:ListenerRule")
    assert rule.inputs["priority"] == 100
    assert rule.inputs["conditions"][0]["hostHeader"]["values"] == ["puppy.party", "www.puppy.party"]

    aliases = [r for r in pulumi_mocks.of_type("aws:route53/record:Record") if "aliases" in r.inputs]
    assert sorted(r.inputs["name"] for r in aliases) == ["puppy.party", "www.puppy.party"]
    assert {r.inputs["aliases"][0]["name"] for r in aliases} == {"testing01-staging.us-east-2.elb.amazonaws.com"}

    assert len(pulumi_mocks.of_type("aws:ec2/flowLog:FlowLog")) == 1
    assert len(pulumi_mocks.of_type("aws:wafv2/webAclAssociation:WebAclAssociation")) == 1
    assert len(pulumi_mocks.of_type("aws:autoscaling/group:Group")) == 1


def test_optional_parts_disabled(pulumi_mocks, aws_stack, aws_stack_config) -> None:
    aws_stack.cfg = dataclasses.replace(
        aws_stack_config,
        flow_logs_enabled=False,
        single_nat_gateway=True,
        vpc_endpoint_services=[],
        load_balancer=webstack.aws_stack.LoadBalancerConfig(access_logs_enabled=False),
        waf=webstack.aws_stack.WAFConfig(enabled=False),
    )

    @pulumi.runtime.test
    def build():
        web = AWSWebStack(aws_stack)
        assert web.log_bucket is None
        assert web.waf is None

    build()

    assert pulumi_mocks.of_type("aws:s3/bucket:Bucket") == []
    assert pulumi_mocks.of_type("aws:wafv2/webAcl:WebAcl") == []
    assert pulumi_mocks.of_type("aws:ec2/flowLog:FlowLog") == []
    assert pulumi_mocks.of_type("aws:ec2/vpcEndpoint:VpcEndpoint") == []
    assert len(pulumi_mocks.of_type("aws:ec2/natGateway:NatGateway")) == 1
    (lb,) = pulumi_mocks.of_type("aws:lb/loadBalancer:LoadBalancer")
    assert lb.inputs.get("accessLogs") is None


def test_availability_zones_looked_up(pulumi_mocks, aws_stack, aws_stack_config) -> None:
    aws_stack.cfg = dataclasses.replace(aws_stack_config, availability_zone_ids=[], vpc_az_count=3)

    @pulumi.runtime.test
    def build():
        web = AWSWebStack(aws_stack)
        assert web.vpc.azs == ["use2-az1", "use2-az2", "use2-az3"]

    build()

    assert len(pulumi_mocks.of_type("aws:ec2/subnet:Subnet")) == 6


def test_autoload(pulumi_mocks, write_stack_yaml) -> None:
    write_stack_yaml(
        "testing01-staging",
        {
            "account_id": "123456789012",
            "availability_zone_ids": ["use2-az1", "use2-az2"],
            "vpc_az_count": 2,
            "sites": {"main": {"spec": {"domain": "puppy.party", "app": "web"}}},
            "apps": {"web": {"spec": {"ami_id": "ami-0123456789abcdef0"}}},
        },
    )
    pulumi.runtime.set_mocks(pulumi_mocks, stack="testing01-staging", preview=False)

    @pulumi.runtime.test
    def build():
        web = AWSWebStack.autoload()
        assert web.stack.compound_name == "testing01-staging"

    build()

    assert len(pulumi_mocks.of_type("aws:lb/loadBalancer:LoadBalancer")) == 1
