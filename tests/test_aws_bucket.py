import json

import pulumi
import pulumi_aws as aws
import pytest

import webstack.pulumi_resources.aws_bucket
from webstack.pulumi_resources.aws_bucket import AWSLogBucket, PolicyType, define_bucket_policy, elb_log_delivery_policy

TAGS = {"webstack/true-name": "testing01"}


@pulumi.runtime.test
def test_define_bucket_policy(pulumi_mocks) -> None:
    bucket = aws.s3.Bucket("testymctestface-bucket")
    policy = define_bucket_policy(
        name="testymctestface-policy",
        compound_name="testing01-staging",
        bucket=bucket,
        policy_name="testymctestface-policy",
        policy_description="For when you need to dip",
        policy_type=PolicyType.READ,
        prefix_path="/reports/",
    )

    def check(args):
        doc, description = args
        statement = json.loads(doc)["Statement"][0]
        assert statement["Action"] == ["s3:GetObject", "s3:GetObjectTagging", "s3:ListBucket"]
        assert statement["Resource"][1].endswith("testymctestface-bucket/reports/*")
        assert description == "For when you need to dip"

    return pulumi.Output.all(policy.policy, policy.description).apply(check)


@pulumi.runtime.test
def test_define_bucket_policy_read_write(pulumi_mocks) -> None:
    bucket = aws.s3.Bucket("rw-bucket")
    policy = define_bucket_policy(
        name="rw",
        compound_name="testing01-staging",
        bucket=bucket,
        policy_name="rw-policy",
        policy_type=PolicyType.READ_WRITE,
    )

    def check(args):
        doc, description = args
        statement = json.loads(doc)["Statement"][0]
        assert "s3:PutObject" in statement["Action"]
        assert statement["Resource"][1].endswith("rw-bucket/*")
        assert "to read/write the" in description

    return pulumi.Output.all(policy.policy, policy.description).apply(check)


def test_define_bucket_policy_unknown_type(pulumi_mocks) -> None:
    @pulumi.runtime.test
    def build():
        bucket = aws.s3.Bucket("bad-bucket")
        with pytest.raises(ValueError, match="unknown policy type"):
            define_bucket_policy(
                name="bad",
                compound_name="testing01-staging",
                bucket=bucket,
                policy_name="bad-policy",
                policy_type="admin",  # type: ignore
            )

    build()


def test_elb_log_delivery_policy() -> None:
    doc = json.loads(elb_log_delivery_policy("arn:aws:s3:::logs", "123456789012"))

    allow, deny = doc["Statement"]
    assert allow["Principal"] == {"Service": "logdelivery.elasticloadbalancing.amazonaws.com"}
    assert allow["Action"] == "s3:PutObject"
    assert allow["Resource"] == "arn:aws:s3:::logs/AWSLogs/123456789012/*"
    assert deny["Effect"] == "Deny"
    assert deny["Condition"] == {"Bool": {"aws:SecureTransport": "false"}}


def test_aws_log_bucket(pulumi_mocks) -> None:
    @pulumi.runtime.test
    def build():
        log_bucket = AWSLogBucket(
            "testing01-staging",
            bucket_prefix="webstack-testing01-staging-logs-",
            account_id="123456789012",
            tags=TAGS,
            retention_in_days=30,
        )
        assert log_bucket.read_policy is not None

    build()

    bucket = pulumi_mocks.named("testing01-staging-logs")
    assert bucket.inputs["bucketPrefix"] == "webstack-testing01-staging-logs-"
    assert bucket.inputs["forceDestroy"] is True
    sse = bucket.inputs["serverSideEncryptionConfiguration"]["rule"]["applyServerSideEncryptionByDefault"]
    assert sse["sseAlgorithm"] == "AES256"

    pab = pulumi_mocks.named("testing01-staging-logs-public-access-block")
    assert all(pab.inputs[k] is True for k in ("blockPublicAcls", "blockPublicPolicy", "ignorePublicAcls"))

    lifecycle = pulumi_mocks.named("testing01-staging-logs-lifecycle")
    assert lifecycle.inputs["rules"][0]["expiration"]["days"] == 30

    policy = json.loads(pulumi_mocks.named("testing01-staging-logs-policy").inputs["policy"])
    assert policy["Statement"][0]["Resource"].endswith("/AWSLogs/123456789012/*")

    read_policy = json.loads(pulumi_mocks.named("testing01-staging-logs-read").inputs["policy"])
    assert read_policy["Statement"][0]["Resource"][1].endswith("/AWSLogs/123456789012/*")


def test_aws_log_bucket_protected(pulumi_mocks) -> None:
    @pulumi.runtime.test
    def build():
        webstack.pulumi_resources.aws_bucket.AWSLogBucket(
            "testing01-production",
            bucket_prefix="webstack-testing01-production-logs-",
            account_id="123456789012",
            tags=TAGS,
            protect=True,
        )

    build()

    assert pulumi_mocks.named("testing01-production-logs").inputs["forceDestroy"] is False
