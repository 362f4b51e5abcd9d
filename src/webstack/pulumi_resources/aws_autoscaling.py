import base64

import pulumi
import pulumi_aws as aws

import webstack
import webstack.aws_stack
from webstack.pulumi_resources import StrInput
from webstack.pulumi_resources.aws_iam import (
    CLOUDWATCH_AGENT_SERVER_POLICY_ARN,
    SSM_MANAGED_INSTANCE_CORE_POLICY_ARN,
    build_log_group_arn,
    define_ec2_assume_role_policy,
    define_log_write_inline,
)

DEFAULT_USER_DATA = """#!/bin/bash
set -euo pipefail
dnf install -y amazon-cloudwatch-agent
"""


def encode_user_data(user_data: str) -> str:
    return base64.b64encode(user_data.encode("utf-8")).decode("ascii")


def get_ami_id(architecture: str) -> str:
    """Most recent Amazon Linux 2023 image for the architecture."""
    ami = aws.ec2.get_ami(
        most_recent=True,
        name_regex="al2023-ami-202*",
        owners=[webstack.AMAZON_ACCOUNT_ID],
        filters=[
            aws.ec2.GetAmiFilterArgs(
                name="architecture",
                values=[architecture],
            ),
            aws.ec2.GetAmiFilterArgs(
                name="virtualization-type",
                values=["hvm"],
            ),
        ],
    )
    return ami.id


class AWSAppGroup(pulumi.ComponentResource):
    """
    An auto-scaling group of identical instances serving one app behind the load balancer.

    Instances live in the private subnets, accept traffic on the app port from the load
    balancer only and are reachable for operators through Session Manager.
    """

    name: str
    app_name: str
    app: webstack.aws_stack.AWSAppConfig
    tags: dict[str, str]

    security_group: aws.ec2.SecurityGroup
    role: aws.iam.Role
    instance_profile: aws.iam.InstanceProfile
    log_group: aws.cloudwatch.LogGroup
    launch_template: aws.ec2.LaunchTemplate
    autoscaling_group: aws.autoscaling.Group
    scaling_policy: aws.autoscaling.Policy

    def __init__(
        self,
        stack: webstack.aws_stack.AWSStack,
        app_name: str,
        vpc_id: StrInput,
        subnet_ids: list[pulumi.Output[str]],
        load_balancer_security_group_id: StrInput,
        target_group_arn: StrInput,
        *args,
        **kwargs,
    ):
        self.name = f"{stack.compound_name}-{app_name}"
        self.app_name = app_name
        self.app = stack.cfg.apps[app_name]
        self.tags = stack.required_tags | {str(webstack.TagKeys.WEBSTACK_APP_NAME): app_name}

        super().__init__(f"webstack:{self.__class__.__name__}", self.name, *args, **kwargs)

        self._define_security_group(vpc_id, load_balancer_security_group_id)
        self._define_log_group(stack.app_log_group_name(app_name), stack.cfg.account_id, stack.cfg.region)
        self._define_iam(stack.app_role_name(app_name))
        self._define_launch_template()
        self._define_autoscaling_group(subnet_ids, target_group_arn)
        self._define_scaling_policy()

        self.register_outputs(
            {
                "autoscaling_group_name": self.autoscaling_group.name,
                "launch_template_id": self.launch_template.id,
                "security_group_id": self.security_group.id,
                "role_arn": self.role.arn,
                "log_group_name": self.log_group.name,
            }
        )

    def _define_security_group(self, vpc_id: StrInput, load_balancer_security_group_id: StrInput):
        self.security_group = aws.ec2.SecurityGroup(
            f"{self.name}-instances",
            description=f"{self.name} instances",
            name_prefix=f"{self.name}-instances-",
            vpc_id=vpc_id,
            ingress=[
                aws.ec2.SecurityGroupIngressArgs(
                    description="app port from the load balancer",
                    from_port=self.app.port,
                    to_port=self.app.port,
                    protocol="tcp",
                    security_groups=[load_balancer_security_group_id],
                )
            ],
            egress=[
                aws.ec2.SecurityGroupEgressArgs(
                    from_port=0,
                    to_port=0,
                    protocol="-1",
                    cidr_blocks=["0.0.0.0/0"],
                )
            ],
            tags=self.tags | {"Name": f"{self.name}-instances"},
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_log_group(self, log_group_name: str, account_id: str, region: str):
        self.log_group = aws.cloudwatch.LogGroup(
            f"{self.name}-logs",
            name=log_group_name,
            retention_in_days=self.app.log_retention_days,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )
        self._log_group_arn = build_log_group_arn(account_id, log_group_name, region)

    def _define_iam(self, role_name: str):
        self.role = aws.iam.Role(
            role_name,
            name=role_name,
            assume_role_policy=define_ec2_assume_role_policy(),
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self, delete_before_replace=True),
        )

        for suffix, policy_arn in (
            ("ssm", SSM_MANAGED_INSTANCE_CORE_POLICY_ARN),
            ("cloudwatch-agent", CLOUDWATCH_AGENT_SERVER_POLICY_ARN),
        ):
            aws.iam.RolePolicyAttachment(
                f"{role_name}-{suffix}",
                role=self.role.name,
                policy_arn=policy_arn,
                opts=pulumi.ResourceOptions(parent=self.role, delete_before_replace=True),
            )

        aws.iam.RolePolicy(
            f"{role_name}-logs",
            name=f"{role_name}-logs",
            role=self.role.id,
            policy=define_log_write_inline([self._log_group_arn]),
            opts=pulumi.ResourceOptions(parent=self.role),
        )

        self.instance_profile = aws.iam.InstanceProfile(
            f"{self.name}-profile",
            name=role_name,
            role=self.role.name,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self.role, delete_before_replace=True),
        )

    def _define_launch_template(self):
        ami_id = self.app.ami_id
        if ami_id is None:
            ami_id = get_ami_id(self.app.architecture)
            pulumi.log.info(f"{self.name}: using latest Amazon Linux 2023 image {ami_id}", self)

        user_data = self.app.user_data if self.app.user_data is not None else DEFAULT_USER_DATA

        self.launch_template = aws.ec2.LaunchTemplate(
            self.name,
            name_prefix=f"{self.name}-",
            image_id=ami_id,
            instance_type=self.app.instance_type,
            vpc_security_group_ids=[self.security_group.id],
            iam_instance_profile=aws.ec2.LaunchTemplateIamInstanceProfileArgs(
                arn=self.instance_profile.arn,
            ),
            metadata_options=aws.ec2.LaunchTemplateMetadataOptionsArgs(
                http_endpoint="enabled",
                http_tokens="required",
                http_put_response_hop_limit=1,
            ),
            block_device_mappings=[
                aws.ec2.LaunchTemplateBlockDeviceMappingArgs(
                    device_name="/dev/xvda",
                    ebs=aws.ec2.LaunchTemplateBlockDeviceMappingEbsArgs(
                        volume_size=self.app.root_volume_size,
                        volume_type="gp3",
                        encrypted="true",
                        delete_on_termination="true",
                    ),
                )
            ],
            monitoring=aws.ec2.LaunchTemplateMonitoringArgs(enabled=True),
            user_data=encode_user_data(user_data),
            update_default_version=True,
            tag_specifications=[
                aws.ec2.LaunchTemplateTagSpecificationArgs(
                    resource_type=resource_type,
                    tags=self.tags | {"Name": self.name},
                )
                for resource_type in ("instance", "volume")
            ],
            tags=self.tags | {"Name": self.name},
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_autoscaling_group(self, subnet_ids: list[pulumi.Output[str]], target_group_arn: StrInput):
        self.autoscaling_group = aws.autoscaling.Group(
            self.name,
            name_prefix=f"{self.name}-",
            min_size=self.app.min_size,
            max_size=self.app.max_size,
            desired_capacity=self.app.effective_desired_capacity,
            vpc_zone_identifiers=subnet_ids,
            target_group_arns=[target_group_arn],
            health_check_type="ELB",
            health_check_grace_period=self.app.health_check_grace_period,
            launch_template=aws.autoscaling.GroupLaunchTemplateArgs(
                id=self.launch_template.id,
                version=self.launch_template.latest_version.apply(str),
            ),
            instance_refresh=aws.autoscaling.GroupInstanceRefreshArgs(
                strategy="Rolling",
                preferences=aws.autoscaling.GroupInstanceRefreshPreferencesArgs(
                    min_healthy_percentage=50,
                ),
            ),
            enabled_metrics=[
                "GroupDesiredCapacity",
                "GroupInServiceInstances",
                "GroupMaxSize",
                "GroupMinSize",
                "GroupTotalInstances",
            ],
            tags=[
                aws.autoscaling.GroupTagArgs(
                    key=key,
                    value=value,
                    propagate_at_launch=True,
                )
                for key, value in sorted((self.tags | {"Name": self.name}).items())
            ],
            opts=pulumi.ResourceOptions(parent=self, ignore_changes=["desired_capacity"]),
        )

    def _define_scaling_policy(self):
        self.scaling_policy = aws.autoscaling.Policy(
            f"{self.name}-cpu",
            autoscaling_group_name=self.autoscaling_group.name,
            policy_type="TargetTrackingScaling",
            target_tracking_configuration=aws.autoscaling.PolicyTargetTrackingConfigurationArgs(
                predefined_metric_specification=aws.autoscaling.PolicyTargetTrackingConfigurationPredefinedMetricSpecificationArgs(
                    predefined_metric_type="ASGAverageCPUUtilization",
                ),
                target_value=self.app.cpu_target_utilization,
            ),
            opts=pulumi.ResourceOptions(parent=self.autoscaling_group),
        )
