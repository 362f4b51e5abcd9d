from __future__ import annotations

import dataclasses
import ipaddress
import os
import typing

import webstack
import webstack.junkdrawer
import webstack.paths
import webstack.stack
from webstack.pulumi_resources.lib import validate_tags

if typing.TYPE_CHECKING:
    import collections.abc

_T = typing.TypeVar("_T")

MAX_AZ_COUNT = 3
MIN_LISTENER_RULE_PRIORITY = 1
MAX_LISTENER_RULE_PRIORITY = 50000
DEFAULT_LISTENER_RULE_PRIORITY = 100
LISTENER_RULE_PRIORITY_STEP = 10
MIN_WAF_RATE_LIMIT = 10
MAX_WAF_RATE_LIMIT = 2_000_000_000
MAX_PORT = 65535

# Values accepted by CloudWatch Logs for retention_in_days
CLOUDWATCH_RETENTION_DAYS = frozenset(
    [1, 3, 5, 7, 14, 30, 60, 90, 120, 150, 180, 365, 400, 545, 731, 1096, 1827, 2192, 2557, 2922, 3288, 3653]
)

# VPC endpoint services that may be requested in `vpc_endpoint_services`
VALID_VPC_ENDPOINT_SERVICES = frozenset(
    [
        "dynamodb",
        "ec2",
        "ec2messages",
        "kms",
        "logs",
        "s3",
        "ssm",
        "ssmmessages",
    ]
)

VALID_ARCHITECTURES = frozenset(["arm64", "x86_64"])
VALID_TARGET_PROTOCOLS = frozenset(["HTTP", "HTTPS"])

# Tag keys webstack adds to resources on top of resource_tags
WEBSTACK_TAG_KEYS = frozenset([*(str(k) for k in webstack.TagKeys), "Name"])


def _validate_retention(field: str, days: int) -> None:
    if days not in CLOUDWATCH_RETENTION_DAYS:
        msg = f"Invalid {field}: {days}. Valid values are: {sorted(CLOUDWATCH_RETENTION_DAYS)}"
        raise ValueError(msg)


def _validate_cidrs(field: str, cidrs: collections.abc.Iterable[str], *, ipv4_only: bool = False) -> None:
    for cidr in cidrs:
        try:
            network = ipaddress.ip_network(cidr)
        except ValueError as e:
            msg = f"Invalid CIDR in {field}: {cidr!r} ({e})"
            raise ValueError(msg) from e
        if ipv4_only and network.version != 4:  # noqa: PLR2004
            msg = f"Invalid CIDR in {field}: {cidr!r} is not an IPv4 network"
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True)
class AWSSiteConfig(webstack.SiteConfig):
    certificate_arn: str | None = None
    zone_id: str | None = None
    certificate_validation_enabled: bool = True  # If False, certificate_arn must be set


@dataclasses.dataclass(frozen=True)
class AWSAppConfig:
    """A group of identical instances behind the load balancer."""

    instance_type: str = "t3.small"
    architecture: str = "x86_64"
    ami_id: str | None = None  # If None, the most recent Amazon Linux 2023 AMI is used
    min_size: int = 1
    max_size: int = 2
    desired_capacity: int | None = None  # If None, will use min_size
    port: int = 8080
    protocol: str = "HTTP"
    health_check_path: str = "/"
    health_check_matcher: str = "200-399"
    health_check_grace_period: int = 300
    deregistration_delay: int = 30
    root_volume_size: int = 20  # Root disk size in GB
    user_data: str | None = None
    cpu_target_utilization: float = 60.0
    path_patterns: list[str] = dataclasses.field(default_factory=lambda: ["/*"])
    priority: int | None = None  # Listener rule priority; assigned in app order if None
    log_retention_days: int = 30

    def __post_init__(self):
        if self.architecture not in VALID_ARCHITECTURES:
            msg = f"Invalid architecture: {self.architecture!r}. Must be one of {sorted(VALID_ARCHITECTURES)}"
            raise ValueError(msg)
        if self.protocol not in VALID_TARGET_PROTOCOLS:
            msg = f"Invalid protocol: {self.protocol!r}. Must be one of {sorted(VALID_TARGET_PROTOCOLS)}"
            raise ValueError(msg)
        if not 0 < self.port <= MAX_PORT:
            msg = f"Invalid port: {self.port}"
            raise ValueError(msg)
        if self.min_size < 0 or self.max_size < self.min_size:
            msg = f"Invalid size bounds: min_size={self.min_size} max_size={self.max_size}"
            raise ValueError(msg)
        if self.desired_capacity is not None and not self.min_size <= self.desired_capacity <= self.max_size:
            msg = (
                f"desired_capacity={self.desired_capacity} must be between "
                f"min_size={self.min_size} and max_size={self.max_size}"
            )
            raise ValueError(msg)
        if not 0 < self.cpu_target_utilization <= 100:  # noqa: PLR2004
            msg = f"cpu_target_utilization must be in (0, 100], got {self.cpu_target_utilization}"
            raise ValueError(msg)
        if not self.health_check_path.startswith("/"):
            msg = f"health_check_path must start with '/': {self.health_check_path!r}"
            raise ValueError(msg)
        if self.priority is not None and not (
            MIN_LISTENER_RULE_PRIORITY <= self.priority <= MAX_LISTENER_RULE_PRIORITY
        ):
            msg = f"Invalid listener rule priority: {self.priority}"
            raise ValueError(msg)
        _validate_retention("log_retention_days", self.log_retention_days)

    @property
    def effective_desired_capacity(self) -> int:
        return self.min_size if self.desired_capacity is None else self.desired_capacity


@dataclasses.dataclass(frozen=True)
class LoadBalancerConfig:
    internal: bool = False
    idle_timeout: int = 60
    ingress_cidrs: list[str] = dataclasses.field(default_factory=lambda: ["0.0.0.0/0"])
    ssl_policy: str = webstack.DEFAULT_SSL_POLICY
    access_logs_enabled: bool = True
    access_log_retention_days: int = 90
    deletion_protection: bool | None = None  # If None, enabled only in production

    def __post_init__(self):
        # security group and NACL ingress rules are IPv4 only
        _validate_cidrs("load_balancer.ingress_cidrs", self.ingress_cidrs, ipv4_only=True)
        if self.idle_timeout < 1:
            msg = f"Invalid idle_timeout: {self.idle_timeout}"
            raise ValueError(msg)
        if self.access_log_retention_days < 1:
            msg = f"Invalid access_log_retention_days: {self.access_log_retention_days}"
            raise ValueError(msg)


@dataclasses.dataclass(frozen=True)
class WAFConfig:
    """Configuration for the web application firewall in front of the load balancer.

    Examples:
        # Disable the WAF entirely
        waf:
          enabled: false

        # Tighten the rate limit and block a range
        waf:
          rate_limit: 500
          blocked_cidrs:
            - 203.0.113.0/24
    """

    enabled: bool = True
    rate_limit: int = 2000
    managed_rule_groups: collections.abc.Sequence[str] = dataclasses.field(
        default_factory=lambda: list(webstack.DEFAULT_WAF_MANAGED_RULE_GROUPS)
    )
    blocked_cidrs: collections.abc.Sequence[str] = dataclasses.field(default_factory=list)
    log_retention_days: int = 90

    def __post_init__(self):
        if not MIN_WAF_RATE_LIMIT <= self.rate_limit <= MAX_WAF_RATE_LIMIT:
            msg = (
                f"Invalid waf.rate_limit: {self.rate_limit}. "
                f"Must be between {MIN_WAF_RATE_LIMIT} and {MAX_WAF_RATE_LIMIT}"
            )
            raise ValueError(msg)
        if len(set(self.managed_rule_groups)) != len(self.managed_rule_groups):
            msg = f"Duplicate names in waf.managed_rule_groups: {list(self.managed_rule_groups)}"
            raise ValueError(msg)
        _validate_cidrs("waf.blocked_cidrs", self.blocked_cidrs)
        _validate_retention("waf.log_retention_days", self.log_retention_days)


@dataclasses.dataclass(frozen=True)
class AWSStackConfig(webstack.StackConfig):
    account_id: str
    apps: typing.Mapping[str, AWSAppConfig]
    sites: typing.Mapping[str, AWSSiteConfig]

    availability_zone_ids: list[str] = dataclasses.field(default_factory=list)
    flow_logs_enabled: bool = True
    flow_log_retention_days: int = 30
    load_balancer: LoadBalancerConfig = dataclasses.field(default_factory=LoadBalancerConfig)
    protect_persistent_resources: bool = True
    resource_tags: dict[str, str] = dataclasses.field(default_factory=dict)
    single_nat_gateway: bool = False
    vpc_az_count: int = 3
    vpc_cidr: str | None = None
    vpc_endpoint_services: collections.abc.Sequence[str] = dataclasses.field(default_factory=lambda: ["s3"])
    waf: WAFConfig = dataclasses.field(default_factory=WAFConfig)

    @property
    def deletion_protection(self) -> bool:
        """
        Determines whether deletion protection is enabled for the load balancer.
        An explicit load_balancer.deletion_protection wins; otherwise True only in production.
        """
        if self.load_balancer.deletion_protection is not None:
            return self.load_balancer.deletion_protection
        return self.environment == webstack.Environments.production

    @property
    def hosted_zone_id(self) -> str | None:
        return self.sites[webstack.MAIN].zone_id

    def __post_init__(self) -> None:
        if webstack.MAIN not in self.sites:
            msg = f"a site named {webstack.MAIN!r} is required"
            raise ValueError(msg)

        if len(self.apps) == 0:
            msg = "at least one app is required"
            raise ValueError(msg)

        for site_name, site in self.sites.items():
            if site.app not in self.apps:
                msg = f"Site '{site_name}': app {site.app!r} is not defined; known apps are {sorted(self.apps)}"
                raise ValueError(msg)
            if site.certificate_arn is None and not site.certificate_validation_enabled:
                msg = f"Site '{site_name}': certificate_arn is required when certificate_validation_enabled is False"
                raise ValueError(msg)

        hostnames: dict[str, str] = {}
        for site_name, site in sorted(self.sites.items()):
            for hostname in site.hostnames():
                if hostname in hostnames:
                    msg = f"Site '{site_name}': hostname {hostname!r} is already used by site '{hostnames[hostname]}'"
                    raise ValueError(msg)
                hostnames[hostname] = site_name

        priorities = [app.priority for app in self.apps.values() if app.priority is not None]
        if len(set(priorities)) != len(priorities):
            msg = f"Duplicate listener rule priorities across apps: {sorted(priorities)}"
            raise ValueError(msg)

        if not 0 < self.vpc_az_count <= MAX_AZ_COUNT:
            msg = f"vpc_az_count must be between 1 and {MAX_AZ_COUNT}, got {self.vpc_az_count}"
            raise ValueError(msg)

        if self.availability_zone_ids and len(self.availability_zone_ids) != self.vpc_az_count:
            msg = (
                f"availability_zone_ids has {len(self.availability_zone_ids)} entries "
                f"but vpc_az_count is {self.vpc_az_count}"
            )
            raise ValueError(msg)

        if self.vpc_cidr is not None:
            _validate_cidrs("vpc_cidr", [self.vpc_cidr], ipv4_only=True)

        invalid_services = set(self.vpc_endpoint_services) - VALID_VPC_ENDPOINT_SERVICES
        if invalid_services:
            msg = (
                f"Invalid service names in vpc_endpoint_services: {sorted(invalid_services)}. "
                f"Valid services are: {sorted(VALID_VPC_ENDPOINT_SERVICES)}"
            )
            raise ValueError(msg)

        _validate_retention("flow_log_retention_days", self.flow_log_retention_days)
        object.__setattr__(self, "resource_tags", validate_tags(self.resource_tags or {}, WEBSTACK_TAG_KEYS))


class AWSStack(webstack.stack.AbstractStack):
    cfg: AWSStackConfig

    def load_unique_config(self) -> None:
        cfg_dict = self.read_stack_yaml()
        if cfg_dict.get("kind") != AWSStackConfig.__name__ or cfg_dict.get("apiVersion") != webstack.API_VERSION:
            msg = (
                f"mismatched stack config kind={cfg_dict.get('kind')!r} "
                f"apiVersion={cfg_dict.get('apiVersion')!r} in {str(self.stack_yaml)!r}"
            )
            raise ValueError(msg)

        spec = self.spec

        sites = {}
        for site_name, site_dict in sorted(spec.pop("sites", {}).items()):
            site_spec = self._normalize_keys((site_dict or {}).get("spec", {}))
            sites[site_name] = self._build_section(f"site {site_name!r}", AWSSiteConfig, site_spec)

        spec["sites"] = sites

        apps = {}
        for app_name, app_spec in sorted(spec.pop("apps", {}).items()):
            apps[app_name] = self._load_app_config_dict(app_name, app_spec)

        spec["apps"] = apps

        if "load_balancer" in spec:
            spec["load_balancer"] = self._build_section(
                "load_balancer", LoadBalancerConfig, self._normalize_keys(spec.pop("load_balancer"))
            )

        if "waf" in spec:
            spec["waf"] = self._build_section("waf", WAFConfig, self._normalize_keys(spec.pop("waf")))

        if "account_id" in spec:
            spec["account_id"] = str(spec["account_id"])

        spec.setdefault("region", webstack.DEFAULT_REGION)

        self.cfg = self._build_section("stack", AWSStackConfig, spec)

    def _build_section(self, section: str, cls: type[_T], spec: dict[str, typing.Any]) -> _T:
        try:
            return cls(**spec)
        except TypeError as e:
            msg = f"invalid {section} config in {str(self.stack_yaml)!r}: {e}"
            raise ValueError(msg) from e

    @staticmethod
    def _normalize_keys(d: dict[str, typing.Any] | None) -> dict[str, typing.Any]:
        return {k.replace("-", "_"): v for k, v in (d or {}).items()}

    def _load_app_config_dict(self, app_name: str, app_dict: dict[str, typing.Any]) -> AWSAppConfig:
        app_spec = self._normalize_keys((app_dict or {}).get("spec", {}))

        # user_data_file is resolved relative to the stack directory
        user_data_file = app_spec.pop("user_data_file", None)
        if user_data_file is not None:
            if "user_data" in app_spec:
                msg = "only one of user_data and user_data_file may be set"
                raise ValueError(msg)
            app_spec["user_data"] = (self.d / user_data_file).read_text()

        return self._build_section(f"app {app_name!r}", AWSAppConfig, app_spec)

    @property
    def cloud_provider(self) -> webstack.CloudProvider:
        return webstack.CloudProvider.AWS

    @property
    def required_tags(self) -> dict[str, str]:
        return (self.cfg.resource_tags or {}) | {
            str(webstack.TagKeys.WEBSTACK_TRUE_NAME): self.cfg.true_name,
            str(webstack.TagKeys.WEBSTACK_ENVIRONMENT): self.cfg.environment,
        }

    @property
    def state_bucket(self) -> str:
        return f"{self.prefix}-{self.compound_name}"

    @property
    def state_backend_url(self) -> str:
        return webstack.junkdrawer.state_bucket_url(self.state_bucket, self.cfg.region)

    @property
    def secrets_provider_url(self) -> str:
        """Secrets provider for the engine stack; WEBSTACK_SECRETS_PROVIDER overrides the KMS default."""
        override = os.environ.get("WEBSTACK_SECRETS_PROVIDER")
        if override:
            return override
        return f"awskms://{webstack.STATE_KMS_KEY_ALIAS}?region={self.cfg.region}"

    def stack_env(self) -> dict[str, str]:
        env = os.environ.copy()
        env.setdefault("PULUMI_BACKEND_URL", self.state_backend_url)

        return env | {"AWS_REGION": self.cfg.region}

    def app_role_name(self, app_name: str) -> str:
        return f"{app_name}.{self.compound_name}.{webstack.Roles.APP_INSTANCE}"

    @property
    def flow_logs_role_name(self) -> str:
        return f"{self.compound_name}.{webstack.Roles.FLOW_LOGS}"

    def app_log_group_name(self, app_name: str) -> str:
        return f"/webstack/{self.compound_name}/{app_name}"

    @property
    def flow_log_group_name(self) -> str:
        return f"{self.compound_name}-VPCFlowLogs"

    @property
    def waf_log_group_name(self) -> str:
        # WAF only delivers logs to groups whose name starts with aws-waf-logs-
        return f"aws-waf-logs-{self.compound_name}"

    @property
    def log_bucket_prefix(self) -> str:
        return f"{self.prefix}-{self.compound_name}-logs-"

    def vpc_cidr(self) -> ipaddress.IPv4Network:
        if self.cfg.vpc_cidr is not None:
            return ipaddress.IPv4Network(self.cfg.vpc_cidr)
        second_octet = webstack.junkdrawer.octet_signature(self.compound_name)
        return ipaddress.IPv4Network(f"10.{second_octet}.0.0/16")

    def app_priorities(self) -> dict[str, int]:
        """Listener rule priority for each app.

        Apps with an explicit priority keep it; the rest are assigned in name order
        starting at 100 in steps of 10, skipping any priority already taken.
        """
        taken = {app.priority for app in self.cfg.apps.values() if app.priority is not None}
        priorities = {}
        next_priority = DEFAULT_LISTENER_RULE_PRIORITY

        for app_name, app in sorted(self.cfg.apps.items()):
            if app.priority is not None:
                priorities[app_name] = app.priority
                continue

            while next_priority in taken:
                next_priority += LISTENER_RULE_PRIORITY_STEP

            priorities[app_name] = next_priority
            taken.add(next_priority)
            next_priority += LISTENER_RULE_PRIORITY_STEP

        return priorities

    def app_hostnames(self, app_name: str) -> list[str]:
        return sorted(
            hostname
            for site in self.cfg.sites.values()
            if site.app == app_name
            for hostname in site.hostnames()
        )

    def vpc(self) -> dict[str, typing.Any]:
        return webstack.aws_vpc(self.compound_name, region=self.cfg.region) or {}

    def domain_hosted_zone(self, site_name: str = webstack.MAIN) -> dict[str, typing.Any]:
        site = self.cfg.sites[site_name]
        zone_id = site.zone_id or webstack.aws_route53_find_hosted_zone_id(site.domain, region=self.cfg.region)
        if zone_id is None:
            return {}

        hosted_zone, ok = webstack.aws_route53_get_hosted_zone(zone_id, region=self.cfg.region)
        if not ok:
            return {}

        return {
            "Id": hosted_zone["HostedZone"]["Id"],
            "Name": hosted_zone["HostedZone"]["Name"],
            "NameServers": hosted_zone.get("DelegationSet", {}).get("NameServers", []),
        }

    def domain_certificate_arn(self, site_name: str = webstack.MAIN) -> str | None:
        site = self.cfg.sites[site_name]
        if site.certificate_arn is not None:
            return site.certificate_arn

        return webstack.aws_cert_arn_for_domain(site.domain, region=self.cfg.region)

    def as_dict(self) -> dict[str, typing.Any]:
        return dataclasses.asdict(self.cfg)
