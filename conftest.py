"""Shared pytest fixtures for webstack tests.

This module provides common fixtures used across test files:
- webstack_root: Sets WEBSTACK_ROOT environment variable
- pulumi_mocks: Recording Pulumi mocks, installed for the test
- aws_stack_config: An AWSStackConfig with sensible defaults
- aws_stack: An AWSStack using that config
- write_stack_yaml: Writes a webstack.yaml under the stack root
"""

import json
import pathlib
import typing

import pulumi
import pytest
import yaml

import webstack
import webstack.aws_stack

MOCK_AMI_ID = "ami-0123456789abcdef0"
MOCK_ZONE_IDS = ["use2-az1", "use2-az2", "use2-az3"]


# ============================================================================
# Environment Setup Fixtures
# ============================================================================


@pytest.fixture
def webstack_root(monkeypatch: pytest.MonkeyPatch, tmp_path: pathlib.Path) -> pathlib.Path:
    """Set WEBSTACK_ROOT environment variable to a temporary directory.

    This fixture is required for any test that loads stack configs or uses
    the Paths class.

    Usage:
        def test_something(webstack_root):
            paths = Paths()
            assert paths.root == webstack_root
    """
    monkeypatch.setenv("WEBSTACK_ROOT", str(tmp_path))
    monkeypatch.setenv("WEBSTACK_CACHE", str(tmp_path / ".cache"))
    return tmp_path


@pytest.fixture
def write_stack_yaml(webstack_root: pathlib.Path) -> typing.Callable[..., pathlib.Path]:
    """Write a stack config and return its directory.

    Usage:
        def test_something(write_stack_yaml):
            d = write_stack_yaml("testing01-staging", {"account_id": "123456789012", ...})
    """

    def _write(
        name: str,
        spec: dict[str, typing.Any],
        kind: str = "AWSStackConfig",
        api_version: str = webstack.API_VERSION,
    ) -> pathlib.Path:
        d = webstack_root / "__stacks__" / name
        d.mkdir(parents=True, exist_ok=True)
        (d / "webstack.yaml").write_text(yaml.safe_dump({"apiVersion": api_version, "kind": kind, "spec": spec}))
        return d

    return _write


# ============================================================================
# Pulumi Mock Fixtures
# ============================================================================


class StandardPulumiMocks(pulumi.runtime.Mocks):
    """Standard Pulumi mocks for testing Pulumi resources.

    Resource names are returned as IDs and all inputs are echoed back as outputs,
    plus the handful of provider-computed outputs the components read (arns, DNS
    names, certificate validation options). Every created resource is recorded
    so tests can assert on what was declared.
    """

    def __init__(self):
        super().__init__()
        self.resources: list[pulumi.runtime.MockResourceArgs] = []

    def new_resource(self, args: pulumi.runtime.MockResourceArgs) -> tuple[str | None, dict[typing.Any, typing.Any]]:
        self.resources.append(args)

        outputs = dict(args.inputs)
        outputs.setdefault("arn", f"arn:aws:mock:us-east-2:123456789012:{args.name}")

        if args.typ == "aws:acm/certificate:Certificate":
            domain = args.inputs["domainName"]
            outputs["domainValidationOptions"] = [
                {
                    "domainName": name,
                    "resourceRecordName": f"_x1.{domain}.",
                    "resourceRecordType": "CNAME",
                    "resourceRecordValue": f"_x2.{domain}.acm-validations.aws.",
                }
                for name in [domain, *args.inputs.get("subjectAlternativeNames", [])]
            ]
        elif args.typ == "aws:lb/loadBalancer:LoadBalancer":
            outputs["dnsName"] = f"{args.name}.us-east-2.elb.amazonaws.com"
            outputs["zoneId"] = "Z3AADJGX6KTTL2"
        elif args.typ == "aws:route53/zone:Zone":
            outputs["zoneId"] = args.resource_id or f"Z{args.name}"
            outputs["nameServers"] = ["ns-1.awsdns-00.com", "ns-2.awsdns-00.net"]
        elif args.typ == "aws:route53/record:Record":
            outputs["fqdn"] = args.inputs["name"]
        elif args.typ == "aws:ec2/launchTemplate:LaunchTemplate":
            outputs["latestVersion"] = 1
        elif args.typ == "aws:s3/bucket:Bucket":
            outputs.setdefault("bucket", f"{args.inputs.get('bucketPrefix', args.name)}20261018")

        return args.name, outputs

    def call(
        self, args: pulumi.runtime.MockCallArgs
    ) -> dict[typing.Any, typing.Any] | tuple[dict[typing.Any, typing.Any], list[tuple[str, str]] | None]:
        if args.token == "aws:ec2/getAmi:getAmi":
            return {"id": MOCK_AMI_ID}
        if args.token == "aws:index/getAvailabilityZones:getAvailabilityZones":
            return {"zoneIds": MOCK_ZONE_IDS, "names": ["us-east-2a", "us-east-2b", "us-east-2c"]}
        if args.token == "aws:iam/getPolicyDocument:getPolicyDocument":
            return {"json": json.dumps({"Version": "2012-10-17", "Statement": args.args.get("statements", [])})}
        return {}

    def of_type(self, typ: str) -> list[pulumi.runtime.MockResourceArgs]:
        return [r for r in self.resources if r.typ == typ]

    def named(self, name: str) -> pulumi.runtime.MockResourceArgs:
        matches = [r for r in self.resources if r.name == name]
        assert len(matches) == 1, f"expected one resource named {name!r}, found {len(matches)}"
        return matches[0]


@pytest.fixture
def pulumi_mocks() -> StandardPulumiMocks:
    """Install a fresh set of recording Pulumi mocks for the test.

    Usage:
        @pulumi.runtime.test
        def test_my_resource(pulumi_mocks):
            MyComponent(...)
            assert pulumi_mocks.of_type("aws:ec2/vpc:Vpc")
    """
    mocks = StandardPulumiMocks()
    pulumi.runtime.set_mocks(mocks, preview=False)
    return mocks


# ============================================================================
# Stack Fixtures
# ============================================================================


@pytest.fixture
def aws_stack_config() -> webstack.aws_stack.AWSStackConfig:
    """An AWSStackConfig for "testing01-staging" with one site and one app.

    - Region: "us-east-2", account "123456789012"
    - Site "main" with domain "puppy.party", served on the apex and www
    - App "web" on port 8080
    - Explicit availability zones so no lookups are needed
    """
    return webstack.aws_stack.AWSStackConfig(
        account_id="123456789012",
        environment="staging",
        region="us-east-2",
        true_name="testing01",
        availability_zone_ids=["use2-az1", "use2-az2"],
        vpc_az_count=2,
        sites={
            "main": webstack.aws_stack.AWSSiteConfig(domain="puppy.party", app="web", record_names=["", "www"]),
        },
        apps={
            "web": webstack.aws_stack.AWSAppConfig(ami_id=MOCK_AMI_ID, min_size=2, max_size=4),
        },
    )


@pytest.fixture
def aws_stack(
    webstack_root: pathlib.Path,
    aws_stack_config: webstack.aws_stack.AWSStackConfig,
) -> webstack.aws_stack.AWSStack:
    """An AWSStack named "testing01-staging" carrying aws_stack_config.

    Usage:
        def test_something(aws_stack):
            assert aws_stack.compound_name == "testing01-staging"
    """
    _ = webstack_root
    stack = webstack.aws_stack.AWSStack(name="testing01-staging", paths=None, load_yaml=False)
    stack.cfg = aws_stack_config

    return stack
