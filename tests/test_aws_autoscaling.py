import base64
import json

import pulumi

import webstack.aws_stack
from webstack.pulumi_resources.aws_autoscaling import DEFAULT_USER_DATA, AWSAppGroup, encode_user_data, get_ami_id

MOCK_AMI_ID = "ami-0123456789abcdef0"


def new_app_group(stack: webstack.aws_stack.AWSStack, app_name: str = "web") -> AWSAppGroup:
    return AWSAppGroup(
        stack,
        app_name,
        vpc_id="vpc-0123",
        subnet_ids=[pulumi.Output.from_input("subnet-a"), pulumi.Output.from_input("subnet-b")],
        load_balancer_security_group_id="sg-lb",
        target_group_arn="arn:aws:elasticloadbalancing:us-east-2:123456789012:targetgroup/web",
    )


def test_encode_user_data() -> None:
    assert base64.b64decode(encode_user_data(DEFAULT_USER_DATA)).decode() == DEFAULT_USER_DATA


@pulumi.runtime.test
def test_get_ami_id(pulumi_mocks) -> None:
    assert get_ami_id("arm64") == MOCK_AMI_ID


def test_define_app_group(pulumi_mocks, aws_stack) -> None:
    @pulumi.runtime.test
    def build():
        group = new_app_group(aws_stack)
        assert group.name == "testing01-staging-web"
        assert group.tags["webstack/app-name"] == "web"

    build()

    sg = pulumi_mocks.named("testing01-staging-web-instances")
    (ingress,) = sg.inputs["ingress"]
    assert ingress["fromPort"] == 8080
    assert ingress["securityGroups"] == ["sg-lb"]
    assert "cidrBlocks" not in ingress

    log_group = pulumi_mocks.named("testing01-staging-web-logs")
    assert log_group.inputs["name"] == "/webstack/testing01-staging/web"

    role = pulumi_mocks.named("web.testing01-staging.app-instance.webstack")
    assert "ec2.amazonaws.com" in role.inputs["assumeRolePolicy"]

    attachments = pulumi_mocks.of_type("aws:iam/rolePolicyAttachment:RolePolicyAttachment")
    assert sorted(a.inputs["policyArn"] for a in attachments) == [
        "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore",
        "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy",
    ]

    inline = json.loads(pulumi_mocks.named("web.testing01-staging.app-instance.webstack-logs").inputs["policy"])
    assert inline["Statement"][0]["resources"] == [
        "arn:aws:logs:us-east-2:123456789012:log-group:/webstack/testing01-staging/web:*"
    ]

    lt = pulumi_mocks.of_type("aws:ec2/launchTemplate:LaunchTemplate")[0]
    assert lt.inputs["imageId"] == MOCK_AMI_ID
    assert lt.inputs["metadataOptions"]["httpTokens"] == "required"
    ebs = lt.inputs["blockDeviceMappings"][0]["ebs"]
    assert (ebs["volumeType"], ebs["encrypted"]) == ("gp3", "true")
    assert base64.b64decode(lt.inputs["userData"]).decode() == DEFAULT_USER_DATA
    assert sorted(ts["resourceType"] for ts in lt.inputs["tagSpecifications"]) == ["instance", "volume"]

    asg = pulumi_mocks.of_type("aws:autoscaling/group:Group")[0]
    assert (asg.inputs["minSize"], asg.inputs["maxSize"], asg.inputs["desiredCapacity"]) == (2, 4, 2)
    assert asg.inputs["healthCheckType"] == "ELB"
    assert asg.inputs["vpcZoneIdentifiers"] == ["subnet-a", "subnet-b"]
    assert asg.inputs["launchTemplate"]["version"] == "1"
    assert asg.inputs["instanceRefresh"]["strategy"] == "Rolling"
    assert {"key": "webstack/app-name", "value": "web", "propagateAtLaunch": True} in asg.inputs["tags"]

    policy = pulumi_mocks.named("testing01-staging-web-cpu")
    assert policy.inputs["policyType"] == "TargetTrackingScaling"
    assert policy.inputs["targetTrackingConfiguration"]["targetValue"] == 60.0


def test_app_group_custom_user_data_and_latest_ami(pulumi_mocks, aws_stack, aws_stack_config) -> None:
    aws_stack.cfg = webstack.aws_stack.AWSStackConfig(
        account_id=aws_stack_config.account_id,
        environment=aws_stack_config.environment,
        region=aws_stack_config.region,
        true_name=aws_stack_config.true_name,
        sites=aws_stack_config.sites,
        apps={"web": webstack.aws_stack.AWSAppConfig(architecture="arm64", user_data="#!/bin/bash\necho hi\n")},
    )

    @pulumi.runtime.test
    def build():
        new_app_group(aws_stack)

    build()

    lt = pulumi_mocks.of_type("aws:ec2/launchTemplate:LaunchTemplate")[0]
    assert lt.inputs["imageId"] == MOCK_AMI_ID
    assert base64.b64decode(lt.inputs["userData"]).decode() == "#!/bin/bash\necho hi\n"
