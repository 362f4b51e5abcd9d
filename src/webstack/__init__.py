from __future__ import annotations

import dataclasses
import enum
import ipaddress
import typing

import boto3

AMAZON_ACCOUNT_ID = "137112412989"
API_VERSION = "webstack/v1"
MAIN = "main"
STATE_BUCKET_PREFIX = "webstack"
STATE_KMS_KEY_ALIAS = "alias/webstack-state"
ZERO = "0"

DEFAULT_REGION = "us-east-2"
DEFAULT_SSL_POLICY = "ELBSecurityPolicy-TLS13-1-2-2021-06"

DEFAULT_WAF_MANAGED_RULE_GROUPS = (
    "AWSManagedRulesCommonRuleSet",
    "AWSManagedRulesKnownBadInputsRuleSet",
    "AWSManagedRulesAmazonIpReputationList",
)


class Roles(enum.StrEnum):
    APP_INSTANCE = "app-instance.webstack"
    FLOW_LOGS = "flow-logs.webstack"


class TagKeys(enum.StrEnum):
    WEBSTACK_APP_NAME = "webstack/app-name"
    WEBSTACK_ENVIRONMENT = "webstack/environment"
    WEBSTACK_MANAGED_BY = "webstack/managed-by"
    WEBSTACK_NETWORK_ACCESS = "webstack/network-access"
    WEBSTACK_SITE_NAME = "webstack/site-name"
    WEBSTACK_TRUE_NAME = "webstack/true-name"


class Environments(enum.StrEnum):
    development = "development"
    staging = "staging"
    production = "production"
    validation = "validation"


class CloudProvider(enum.StrEnum):
    AWS = "aws"


class AWSCallerIdentity(typing.TypedDict):
    UserId: str
    Account: str
    Arn: str


class AWSRoute53HostedZoneDescription(typing.TypedDict):
    Id: str
    Name: str
    CallerReference: str
    Config: dict[str, typing.Any]
    ResourceRecordSetCount: int


class AWSRoute53HostedZoneDelegationSet(typing.TypedDict):
    NameServers: list[str]


class AWSRoute53HostedZone(typing.TypedDict):
    HostedZone: AWSRoute53HostedZoneDescription
    DelegationSet: AWSRoute53HostedZoneDelegationSet


@dataclasses.dataclass(frozen=True)
class SiteConfig:
    domain: str
    app: str = MAIN
    record_names: list[str] = dataclasses.field(default_factory=lambda: [""])

    def __post_init__(self):
        if not self.domain or self.domain.startswith(".") or self.domain.endswith("."):
            msg = f"Invalid site domain: {self.domain!r}"
            raise ValueError(msg)
        # the certificate's *.domain name covers a single label only
        for name in self.record_names:
            if "." in name or "*" in name:
                msg = f"Invalid record name {name!r} for {self.domain!r}: must be a single DNS label"
                raise ValueError(msg)

    def hostnames(self) -> list[str]:
        return [f"{name}.{self.domain}" if name else self.domain for name in self.record_names]


@dataclasses.dataclass(frozen=True)
class StackConfig:
    region: str
    environment: str
    sites: typing.Mapping[str, SiteConfig]
    true_name: str

    @property
    def domain(self) -> str:
        return self.sites[MAIN].domain

    @property
    def domains(self) -> list[str]:
        return [site.domain for site in self.sites.values()]


@dataclasses.dataclass
class SubnetCIDRBlocks:
    private: tuple[ipaddress.IPv4Network, ...]
    public: tuple[ipaddress.IPv4Network, ...]
    managed: tuple[ipaddress.IPv4Network, ...]

    @classmethod
    def from_cidr_block(cls, cidr_block: ipaddress.IPv4Network) -> SubnetCIDRBlocks:
        """
        Generates a typical set of private, public, and managed service subnets

        Given a single CIDR block which is expected to be the same thing as the VPC CIDR,
        split into 4 evenly-sized subnets. The first 3 of these 4 is assigned as
        the `private` subnets. The fourth one is split again into 4 evenly-sized subnets,
        with the first 3 of these 4 assigned as `public` subnets. The remaining fourth one
        is split again into 4 evenly-sized subnets and assigned as `managed`. In this way,
        a VPC spanning 3 availability zones may have at least one subnet of each type for
        each availability zone.

        For a VPC CIDR of 10.10.0.0/16 the private subnets are /18, the public subnets /20
        and the managed subnets /22.
        """
        top_level_subnets = list(cidr_block.subnets(2))

        private = top_level_subnets[:3]

        remaining_subnets = list(top_level_subnets[3].subnets(2))

        public = remaining_subnets[:3]
        managed = list(remaining_subnets[3].subnets(2))

        return cls(
            private=tuple(private),
            public=tuple(public),
            managed=tuple(managed),
        )


def aws_elb_log_delivery_principal() -> str:
    return "logdelivery.elasticloadbalancing.amazonaws.com"


def aws_session(exe_env: dict[str, str] | None = None, region: str | None = None) -> boto3.Session:
    return boto3.Session(
        aws_access_key_id=exe_env.get("AWS_ACCESS_KEY_ID") if exe_env else None,
        aws_secret_access_key=exe_env.get("AWS_SECRET_ACCESS_KEY") if exe_env else None,
        aws_session_token=exe_env.get("AWS_SESSION_TOKEN") if exe_env else None,
        region_name=region,
    )


def aws_whoami(exe_env: dict[str, str] | None = None) -> tuple[AWSCallerIdentity, bool]:
    sts_client = aws_session(exe_env).client("sts")

    try:
        response = sts_client.get_caller_identity()
    except Exception:
        return typing.cast(AWSCallerIdentity, {}), False
    else:
        return response, True


def aws_current_account_id(exe_env: dict[str, str] | None = None) -> str:
    awh, ok = aws_whoami(exe_env=exe_env)
    if ok:
        return awh["Account"]

    return ""


def aws_ensure_state_bucket(
    state_bucket: str,
    aws_region: str,
    exe_env: dict[str, str] | None = None,
) -> bool:
    s3_client = aws_session(exe_env, aws_region).client("s3")

    try:
        if aws_region == "us-east-1":
            # us-east-1 doesn't accept a LocationConstraint
            s3_client.create_bucket(Bucket=state_bucket, ObjectOwnership="BucketOwnerEnforced")
        else:
            s3_client.create_bucket(
                Bucket=state_bucket,
                CreateBucketConfiguration={"LocationConstraint": aws_region},
                ObjectOwnership="BucketOwnerEnforced",
            )
    except Exception as e:
        if "BucketAlreadyOwnedByYou" in str(e):
            return True

        try:
            s3_client.get_bucket_location(Bucket=state_bucket)
        except Exception:
            print(f"Error ensuring S3 bucket: {e}")
            return False
        else:
            return True

    try:
        s3_client.put_bucket_versioning(
            Bucket=state_bucket,
            VersioningConfiguration={"Status": "Enabled"},
        )
        s3_client.put_public_access_block(
            Bucket=state_bucket,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": True,
                "IgnorePublicAcls": True,
                "BlockPublicPolicy": True,
                "RestrictPublicBuckets": True,
            },
        )
    except Exception as e:
        print(f"Error configuring S3 bucket {state_bucket!r}: {e}")
        return False

    return True


def aws_ensure_state_key(aws_region: str, exe_env: dict[str, str] | None = None) -> bool:
    """Make sure the KMS key behind STATE_KMS_KEY_ALIAS exists; it encrypts stack secrets."""
    kms_client = aws_session(exe_env, aws_region).client("kms")

    try:
        kms_client.describe_key(KeyId=STATE_KMS_KEY_ALIAS)
    except Exception as e:
        if "NotFoundException" not in str(e):
            print(f"Error describing KMS key {STATE_KMS_KEY_ALIAS!r}: {e}")
            return False
    else:
        return True

    try:
        response = kms_client.create_key(
            Description="webstack state secrets",
            Tags=[{"TagKey": str(TagKeys.WEBSTACK_MANAGED_BY), "TagValue": __name__}],
        )
        kms_client.create_alias(AliasName=STATE_KMS_KEY_ALIAS, TargetKeyId=response["KeyMetadata"]["KeyId"])
    except Exception as e:
        print(f"Error creating KMS key {STATE_KMS_KEY_ALIAS!r}: {e}")
        return False

    return True


def aws_cert_arn_for_domain(
    domain: str, exe_env: dict[str, str] | None = None, region: str = DEFAULT_REGION
) -> str | None:
    acm_client = aws_session(exe_env, region).client("acm")

    try:
        response = acm_client.list_certificates(CertificateStatuses=["ISSUED"])
    except Exception as e:
        print(f"Error listing ACM certificates: {e}")
        return None
    else:
        for cert in response.get("CertificateSummaryList", []):
            if domain == cert["DomainName"] or domain in cert.get("SubjectAlternativeNameSummaries", []):
                return cert["CertificateArn"]
        return None


def aws_route53_get_hosted_zone(
    zone_id: str, exe_env: dict[str, str] | None = None, region: str = DEFAULT_REGION
) -> tuple[AWSRoute53HostedZone, bool]:
    route53_client = aws_session(exe_env, region).client("route53")

    try:
        response = route53_client.get_hosted_zone(Id=zone_id)
    except Exception as e:
        print(f"Error getting Route53 hosted zone: {e}")
        return typing.cast(AWSRoute53HostedZone, {}), False
    else:
        return response, True


def aws_route53_find_hosted_zone_id(
    domain: str, exe_env: dict[str, str] | None = None, region: str = DEFAULT_REGION
) -> str | None:
    route53_client = aws_session(exe_env, region).client("route53")

    try:
        response = route53_client.list_hosted_zones_by_name(DNSName=domain, MaxItems="1")
    except Exception as e:
        print(f"Error listing Route53 hosted zones: {e}")
        return None

    for hosted_zone in response.get("HostedZones", []):
        if hosted_zone["Config"].get("PrivateZone", False):
            continue
        if hosted_zone["Name"].rstrip(".") == domain.rstrip("."):
            return hosted_zone["Id"].removeprefix("/hostedzone/")

    return None


def aws_vpc(
    name: str, exe_env: dict[str, str] | None = None, region: str = DEFAULT_REGION
) -> dict[str, typing.Any] | None:
    ec2_client = aws_session(exe_env, region).client("ec2")

    try:
        response = ec2_client.describe_vpcs(
            Filters=[
                {"Name": "tag:Name", "Values": [name]},
                {"Name": "tag-key", "Values": [str(TagKeys.WEBSTACK_MANAGED_BY)]},
            ]
        )
        vpcs = response.get("Vpcs", [])
        if len(vpcs) == 0:
            return None
        return vpcs[0]
    except Exception as e:
        print(f"Error describing VPCs: {e}")
        return None
