from __future__ import annotations

import enum
import json

import pulumi
import pulumi_aws as aws

import webstack


class PolicyType(enum.StrEnum):
    READ = "read"
    READ_WRITE = "read_write"


def define_bucket_policy(
    name: str,
    compound_name: str,
    bucket: aws.s3.Bucket,
    policy_name: str,
    policy_type: PolicyType,
    policy_description: str = "",
    prefix_path: str = "/",
    required_tags: dict[str, str] | None = None,
    opts: pulumi.ResourceOptions | None = None,
) -> aws.iam.Policy:
    if required_tags is None:
        required_tags = {}

    if opts is None:
        opts = pulumi.ResourceOptions()

    actual_policy_description: str | pulumi.Output[str] = policy_description

    if policy_type == PolicyType.READ:
        actions = [
            "s3:GetObject",
            "s3:GetObjectTagging",
            "s3:ListBucket",
        ]
        policy_tag = f"{compound_name}-{name}-s3-bucket-read-only-policy"
        if policy_description == "":
            actual_policy_description = bucket.bucket.apply(
                lambda x: f"webstack policy for {compound_name} to read the {x} S3 bucket"
            )

    elif policy_type == PolicyType.READ_WRITE:
        actions = [
            "s3:AbortMultipartUpload",
            "s3:DeleteObject",
            "s3:GetBucketLocation",
            "s3:GetObject",
            "s3:GetObjectTagging",
            "s3:ListBucket",
            "s3:PutObject",
            "s3:PutObjectTagging",
        ]
        policy_tag = f"{compound_name}-{name}-s3-bucket-policy"
        if policy_description == "":
            actual_policy_description = bucket.bucket.apply(
                lambda x: f"webstack policy for {compound_name} to read/write the {x} S3 bucket"
            )
    else:
        err_msg = f"unknown policy type: {policy_type}"
        raise ValueError(err_msg)

    prefix = prefix_path.strip("/")
    object_pattern = f"{prefix}/*" if prefix else "*"

    policy_doc = pulumi.Output.all(bucket.arn, object_pattern).apply(
        lambda args: json.dumps(
            {
                "Version": "2012-10-17",
                "Statement": [
                    {
                        "Effect": "Allow",
                        "Action": actions,
                        "Resource": [args[0], f"{args[0]}/{args[1]}"],
                    }
                ],
            }
        )
    )

    return aws.iam.Policy(
        policy_name,
        aws.iam.PolicyArgs(
            name=policy_name,
            description=actual_policy_description,
            policy=policy_doc,
            tags=required_tags | {"Name": policy_tag},
        ),
        opts=pulumi.ResourceOptions.merge(opts, pulumi.ResourceOptions(parent=bucket)),
    )


def elb_log_delivery_policy(bucket_arn: str, account_id: str) -> str:
    """Bucket policy allowing the regional ELB log delivery service to write access logs."""
    return json.dumps(
        {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Sid": "AllowELBLogDelivery",
                    "Effect": "Allow",
                    "Principal": {"Service": webstack.aws_elb_log_delivery_principal()},
                    "Action": "s3:PutObject",
                    "Resource": f"{bucket_arn}/AWSLogs/{account_id}/*",
                },
                {
                    "Sid": "DenyInsecureTransport",
                    "Effect": "Deny",
                    "Principal": "*",
                    "Action": "s3:*",
                    "Resource": [bucket_arn, f"{bucket_arn}/*"],
                    "Condition": {"Bool": {"aws:SecureTransport": "false"}},
                },
            ],
        }
    )


class AWSLogBucket(pulumi.ComponentResource):
    """
    A private bucket receiving load balancer access logs.

    Load balancer access logs only support SSE-S3, so the bucket is encrypted with AES256 rather than KMS.
    """

    name: str
    account_id: str
    tags: dict[str, str]

    bucket: aws.s3.Bucket
    policy: aws.s3.BucketPolicy
    read_policy: aws.iam.Policy

    def __init__(
        self,
        name: str,
        bucket_prefix: str,
        account_id: str,
        tags: dict[str, str],
        retention_in_days: int = 90,
        protect: bool = False,
        *args,
        **kwargs,
    ):
        super().__init__(f"webstack:{self.__class__.__name__}", name, *args, **kwargs)

        self.name = name
        self.account_id = account_id
        self.tags = tags

        self.bucket = aws.s3.Bucket(
            f"{name}-logs",
            aws.s3.BucketArgs(
                bucket_prefix=bucket_prefix,
                acl="private",
                force_destroy=not protect,
                tags=self.tags | {"Name": f"{name}-logs"},
                server_side_encryption_configuration=aws.s3.BucketServerSideEncryptionConfigurationArgs(
                    rule=aws.s3.BucketServerSideEncryptionConfigurationRuleArgs(
                        apply_server_side_encryption_by_default=aws.s3.BucketServerSideEncryptionConfigurationRuleApplyServerSideEncryptionByDefaultArgs(
                            sse_algorithm="AES256",
                        ),
                    ),
                ),
            ),
            opts=pulumi.ResourceOptions(parent=self, protect=protect),
        )

        public_access_block = aws.s3.BucketPublicAccessBlock(
            f"{name}-logs-public-access-block",
            bucket=self.bucket.id,
            block_public_acls=True,
            block_public_policy=True,
            ignore_public_acls=True,
            restrict_public_buckets=True,
            opts=pulumi.ResourceOptions(parent=self.bucket),
        )

        aws.s3.BucketOwnershipControls(
            f"{name}-logs-ownership",
            bucket=self.bucket.id,
            rule=aws.s3.BucketOwnershipControlsRuleArgs(
                object_ownership="BucketOwnerEnforced",
            ),
            opts=pulumi.ResourceOptions(parent=self.bucket),
        )

        aws.s3.BucketVersioningV2(
            f"{name}-logs-versioning",
            bucket=self.bucket.id,
            versioning_configuration=aws.s3.BucketVersioningV2VersioningConfigurationArgs(
                status="Enabled",
            ),
            opts=pulumi.ResourceOptions(parent=self.bucket),
        )

        aws.s3.BucketLifecycleConfigurationV2(
            f"{name}-logs-lifecycle",
            bucket=self.bucket.id,
            rules=[
                aws.s3.BucketLifecycleConfigurationV2RuleArgs(
                    id="expire-access-logs",
                    status="Enabled",
                    filter=aws.s3.BucketLifecycleConfigurationV2RuleFilterArgs(prefix=""),
                    expiration=aws.s3.BucketLifecycleConfigurationV2RuleExpirationArgs(
                        days=retention_in_days,
                    ),
                    noncurrent_version_expiration=aws.s3.BucketLifecycleConfigurationV2RuleNoncurrentVersionExpirationArgs(
                        noncurrent_days=retention_in_days,
                    ),
                    abort_incomplete_multipart_upload=aws.s3.BucketLifecycleConfigurationV2RuleAbortIncompleteMultipartUploadArgs(
                        days_after_initiation=7,
                    ),
                )
            ],
            opts=pulumi.ResourceOptions(parent=self.bucket),
        )

        # the public access block must exist first or the policy put races it
        self.policy = aws.s3.BucketPolicy(
            f"{name}-logs-policy",
            bucket=self.bucket.id,
            policy=self.bucket.arn.apply(lambda arn: elb_log_delivery_policy(arn, self.account_id)),
            opts=pulumi.ResourceOptions(parent=self.bucket, depends_on=[public_access_block]),
        )

        # attachable by whoever analyses the access logs
        self.read_policy = define_bucket_policy(
            name="logs",
            compound_name=name,
            bucket=self.bucket,
            policy_name=f"{name}-logs-read",
            policy_type=PolicyType.READ,
            prefix_path=f"AWSLogs/{account_id}",
            required_tags=self.tags,
        )

        self.register_outputs(
            {
                "bucket": self.bucket.bucket,
                "bucket_arn": self.bucket.arn,
                "read_policy_arn": self.read_policy.arn,
            }
        )
