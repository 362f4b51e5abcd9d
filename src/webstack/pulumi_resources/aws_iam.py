import pulumi
import pulumi_aws as aws

from webstack.pulumi_resources import StrInput

SSM_MANAGED_INSTANCE_CORE_POLICY_ARN = "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore"
CLOUDWATCH_AGENT_SERVER_POLICY_ARN = "arn:aws:iam::aws:policy/CloudWatchAgentServerPolicy"


def build_log_group_arn(account_id: str, name: str, region: str = "us-east-2") -> str:
    # Example: arn:aws:logs:us-east-2:123456789012:log-group:/webstack/example-staging/web:*
    return f"arn:aws:logs:{region}:{account_id}:log-group:{name}:*"


def define_service_assume_role_policy(service: str) -> str:
    return aws.iam.get_policy_document(
        statements=[
            aws.iam.GetPolicyDocumentStatementArgs(
                actions=["sts:AssumeRole"],
                principals=[
                    aws.iam.GetPolicyDocumentStatementPrincipalArgs(
                        type="Service",
                        identifiers=[service],
                    )
                ],
            )
        ]
    ).json


def define_ec2_assume_role_policy() -> str:
    return define_service_assume_role_policy("ec2.amazonaws.com")


def define_log_write_inline(log_group_arns: list[StrInput]) -> pulumi.Output[str]:
    """Inline policy letting an instance ship its own logs to the given log groups."""
    return aws.iam.get_policy_document_output(
        statements=[
            aws.iam.GetPolicyDocumentStatementArgs(
                effect="Allow",
                actions=[
                    "logs:CreateLogStream",
                    "logs:DescribeLogStreams",
                    "logs:PutLogEvents",
                ],
                resources=log_group_arns,
            )
        ]
    ).json
