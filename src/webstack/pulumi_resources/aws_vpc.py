import collections
import ipaddress
import typing
import warnings

import pulumi
import pulumi_aws as aws

import webstack

MAX_AZ_COUNT = 3
MIN_CIDR_BLOCK_SIZE = 4096
NACL_RULE_BLOCK_SIZE = 500
NACL_FIRST_CUSTOM_RULE = 2000

PROTOCOL_NUMBERS = {
    "tcp": "6",
    "udp": "17",
    "all": "-1",
}

FLOW_LOG_FIELDS = (
    "version",
    "account-id",
    "vpc-id",
    "subnet-id",
    "interface-id",
    "flow-direction",
    "action",
    "srcaddr",
    "srcport",
    "dstaddr",
    "dstport",
    "protocol",
    "packets",
    "bytes",
    "start",
    "end",
    "log-status",
)


class NaclRule(typing.NamedTuple):
    suffix: str
    rule_number: int
    from_port: int
    to_port: int
    cidr: str  # "vpc" is replaced with the VPC cidr block
    action: str = "allow"
    egress: bool = False


# https://docs.aws.amazon.com/vpc/latest/userguide/vpc-recommended-nacl-rules.html
BASELINE_NACL_RULES: dict[str, tuple[NaclRule, ...]] = {
    "public": (
        NaclRule("internal-https", 1000, 443, 443, "vpc"),
        NaclRule("ssh-deny", 9000, 22, 22, "0.0.0.0/0", action="deny"),
        NaclRule("rdp-deny", 9001, 3389, 3389, "0.0.0.0/0", action="deny"),
        # return traffic for requests originating in the subnet
        NaclRule("internal-ephemeral", 10000, 1024, 65535, "0.0.0.0/0"),
        NaclRule("https-egress", 1000, 443, 443, "0.0.0.0/0", egress=True),
        NaclRule("ephemeral-egress", 10000, 1024, 65535, "0.0.0.0/0", egress=True),
    ),
    "private": (
        NaclRule("ssh-deny", 9000, 22, 22, "0.0.0.0/0", action="deny"),
        NaclRule("rdp-deny", 9001, 3389, 3389, "0.0.0.0/0", action="deny"),
        # return traffic through the NAT gateways carries the external source address
        NaclRule("ephemeral", 10000, 1024, 65535, "0.0.0.0/0"),
        NaclRule("https-egress", 1000, 443, 443, "0.0.0.0/0", egress=True),
        NaclRule("internal-ephemeral-egress", 10000, 1024, 65535, "vpc", egress=True),
    ),
}


class AWSVpc(pulumi.ComponentResource):
    """
    A VPC with one public and one private subnet per availability zone, routed through
    an internet gateway and (optionally) NAT gateways, and guarded by network ACLs.
    """

    name: str
    cidr_block: ipaddress.IPv4Network
    subnet_cidr_blocks: webstack.SubnetCIDRBlocks
    azs: list[str]
    tags: dict[str, str]

    vpc: aws.ec2.Vpc
    internet_gateway: aws.ec2.InternetGateway
    subnets: dict[str, list[aws.ec2.Subnet]]
    public_route_table: aws.ec2.RouteTable
    private_route_tables: list[aws.ec2.RouteTable]
    nacls: dict[str, aws.ec2.NetworkAcl]
    next_nacl_rule_ids: dict[str, dict[bool, int]]
    nat_gateways: list[aws.ec2.NatGateway]
    nat_gw_public_ips: list[pulumi.Output[str]]
    vpc_endpoint_sg: aws.ec2.SecurityGroup
    endpoints: dict[str, aws.ec2.VpcEndpoint]
    flow_logs_group: aws.cloudwatch.LogGroup | None

    def __init__(
        self,
        name: str,
        cidr_block: str,
        azs: list[str],
        tags: dict[str, str],
        network_access_tags: dict[str, dict[str, str]] | None = None,
        *args,
        **kwargs,
    ):
        """
        Create a VPC, Internet Gateway, Public and Private Subnets, Route tables, Public and Private NACLs
        :param name: the name of the VPC
        :param cidr_block: the CIDR block of the VPC, at least a /20
        :param azs: the Availability Zone ids (use2-az1 vs. us-east-2a) for the VPC. A warning will be emitted if only
        a single AZ is specified (high-availability cannot be achieved)
        :param network_access_tags: tags specifically to apply to network entities including subnets and route tables,
        broken down by privacy type.
        :param tags: the tags to apply to all the resources
        :param opts: the options to use for this resource
        """
        self.name = name
        self.tags = tags
        self.azs = azs
        self.flow_logs_group = None
        self.endpoints = {}
        self.nat_gateways = []
        self.nat_gw_public_ips = []

        network_access_tags = network_access_tags or {"public": {}, "private": {}}

        super().__init__(f"webstack:{self.__class__.__name__}", self.name, *args, **kwargs)

        if len(azs) == 0:
            msg = "Using zero availability zones is not supported"
            pulumi.error(msg, self)
            raise ValueError(msg)

        if len(azs) > MAX_AZ_COUNT:
            msg = f"Using more than {MAX_AZ_COUNT} availability zones is not supported"
            pulumi.error(msg, self)
            raise ValueError(msg)

        if len(azs) == 1:
            warnings.warn(
                "Using a single availability zone is not recommended for production stacks",
                stacklevel=2,
            )

        self.cidr_block = typing.cast(ipaddress.IPv4Network, ipaddress.ip_network(cidr_block))

        if self.cidr_block.num_addresses < MIN_CIDR_BLOCK_SIZE:
            msg = f"Using a VPC cidr smaller than /20 is not supported: {cidr_block}"
            pulumi.error(msg, self)
            raise ValueError(msg)

        self.subnet_cidr_blocks = webstack.SubnetCIDRBlocks.from_cidr_block(self.cidr_block)

        self.vpc = aws.ec2.Vpc(
            name,
            cidr_block=str(self.cidr_block),
            enable_dns_hostnames=True,
            enable_dns_support=True,
            tags=self.tags | {"Name": name},
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.internet_gateway = aws.ec2.InternetGateway(
            name,
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": name} | network_access_tags["public"],
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        self._define_subnets(network_access_tags)
        self._define_route_tables(network_access_tags)
        self._define_nacls(network_access_tags)

        self.vpc_endpoint_sg = aws.ec2.SecurityGroup(
            f"{self.name}-vpc-endpoint",
            description=f"{self.name} VPC endpoint",
            name_prefix=f"{self.name}-vpc-endpoint-",
            ingress=[
                aws.ec2.SecurityGroupIngressArgs(
                    from_port=443,
                    to_port=443,
                    protocol="tcp",
                    cidr_blocks=[str(self.cidr_block)],
                )
            ],
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": f"{self.name}-vpc-endpoint"},
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        self.register_outputs(
            {
                "cidr_block": str(self.cidr_block),
                "subnet_cidr_blocks": {k: [str(n) for n in v] for k, v in vars(self.subnet_cidr_blocks).items()},
                "azs": self.azs,
                "vpc_id": self.vpc.id,
                "public_subnet_ids": self.public_subnet_ids,
                "private_subnet_ids": self.private_subnet_ids,
                "public_network_acl": self.nacls["public"].id,
                "private_network_acl": self.nacls["private"].id,
                "vpc_endpoint_sg": self.vpc_endpoint_sg.id,
            }
        )

    @property
    def public_subnet_ids(self) -> list[pulumi.Output[str]]:
        return [sn.id for sn in self.subnets["public"]]

    @property
    def private_subnet_ids(self) -> list[pulumi.Output[str]]:
        return [sn.id for sn in self.subnets["private"]]

    def _define_subnets(self, network_access_tags: dict[str, dict[str, str]]) -> None:
        self.subnets = collections.defaultdict(list)

        for privacy in ("public", "private"):
            subnet_cidrs = getattr(self.subnet_cidr_blocks, privacy)

            for j, az in enumerate(self.azs):
                number = j + 1
                # public IPs are never auto-assigned; the load balancer is the only public entry point
                subnet = aws.ec2.Subnet(
                    f"{self.name}-{privacy}-az{number}",
                    vpc_id=self.vpc.id,
                    cidr_block=str(subnet_cidrs[j]),
                    availability_zone_id=az,
                    map_public_ip_on_launch=False,
                    tags=self.tags | {"Name": f"{self.name}-{privacy}-az{number}"} | network_access_tags[privacy],
                    opts=pulumi.ResourceOptions(parent=self.vpc),
                )
                self.subnets[privacy].append(subnet)

    def _define_route_tables(self, network_access_tags: dict[str, dict[str, str]]) -> None:
        self.public_route_table = aws.ec2.RouteTable(
            f"{self.name}-public",
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": f"{self.name}-public"} | network_access_tags["public"],
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        aws.ec2.Route(
            f"{self.name}-public",
            route_table_id=self.public_route_table.id,
            gateway_id=self.internet_gateway.id,
            destination_cidr_block="0.0.0.0/0",
            opts=pulumi.ResourceOptions(parent=self.public_route_table),
        )

        for i, subnet in enumerate(self.subnets["public"]):
            aws.ec2.RouteTableAssociation(
                f"{self.name}-public-az{i + 1}",
                subnet_id=subnet.id,
                route_table_id=self.public_route_table.id,
                opts=pulumi.ResourceOptions(parent=self.public_route_table),
            )

        # one private route table per AZ so each can route through its own NAT gateway
        self.private_route_tables = []
        for i, subnet in enumerate(self.subnets["private"]):
            number = i + 1

            private_rt = aws.ec2.RouteTable(
                f"{self.name}-private-az{number}",
                vpc_id=self.vpc.id,
                tags=self.tags | {"Name": f"{self.name}-private-az{number}"} | network_access_tags["private"],
                opts=pulumi.ResourceOptions(parent=self.vpc),
            )

            aws.ec2.RouteTableAssociation(
                f"{self.name}-private-az{number}",
                subnet_id=subnet.id,
                route_table_id=private_rt.id,
                opts=pulumi.ResourceOptions(parent=private_rt),
            )

            self.private_route_tables.append(private_rt)

    def _define_nacls(self, network_access_tags: dict[str, dict[str, str]]) -> None:
        self.nacls = {}
        # Privacy -> Egress? -> rule id
        self.next_nacl_rule_ids = {}

        for privacy, rules in BASELINE_NACL_RULES.items():
            nacl = aws.ec2.NetworkAcl(
                f"{self.name}-{privacy}",
                vpc_id=self.vpc.id,
                subnet_ids=[subnet.id for subnet in self.subnets[privacy]],
                tags=self.tags | {"Name": f"{self.name}-{privacy}"} | network_access_tags[privacy],
                opts=pulumi.ResourceOptions(parent=self.vpc),
            )
            self.nacls[privacy] = nacl

            for rule in rules:
                aws.ec2.NetworkAclRule(
                    f"{self.name}-{privacy}-{rule.suffix}",
                    network_acl_id=nacl.id,
                    egress=rule.egress,
                    rule_number=rule.rule_number,
                    protocol=PROTOCOL_NUMBERS["tcp"],
                    from_port=rule.from_port,
                    to_port=rule.to_port,
                    cidr_block=str(self.cidr_block) if rule.cidr == "vpc" else rule.cidr,
                    rule_action=rule.action,
                    opts=pulumi.ResourceOptions(parent=nacl),
                )

            self.next_nacl_rule_ids[privacy] = {True: NACL_FIRST_CUSTOM_RULE, False: NACL_FIRST_CUSTOM_RULE}

    @staticmethod
    def create_flow_logs_role(
        name: str,
        permissions_boundary: str | None = None,
        tags: dict[str, str] | None = None,
        opts: pulumi.ResourceOptions | None = None,
    ) -> aws.iam.Role:
        if opts is None:
            opts = pulumi.ResourceOptions()

        assume_role_policy = aws.iam.get_policy_document(
            statements=[
                aws.iam.GetPolicyDocumentStatementArgs(
                    actions=["sts:AssumeRole"],
                    principals=[
                        aws.iam.GetPolicyDocumentStatementPrincipalArgs(
                            type="Service", identifiers=["vpc-flow-logs.amazonaws.com"]
                        )
                    ],
                )
            ]
        )
        policy = aws.iam.get_policy_document(
            statements=[
                aws.iam.GetPolicyDocumentStatementArgs(
                    effect="Allow",
                    actions=[
                        "logs:CreateLogGroup",
                        "logs:CreateLogStream",
                        "logs:PutLogEvents",
                        "logs:DescribeLogGroups",
                        "logs:DescribeLogStreams",
                    ],
                    resources=["*"],
                )
            ]
        )
        role = aws.iam.Role(
            name,
            name=name,
            assume_role_policy=assume_role_policy.json,
            permissions_boundary=permissions_boundary,
            tags=tags,
            opts=opts,
        )

        aws.iam.RolePolicy(
            f"{name}-role-policy",
            name=f"{name}-role-policy",
            role=role.id,
            policy=policy.json,
            opts=pulumi.ResourceOptions(parent=role),
        )

        return role

    def with_flow_log(
        self,
        log_group_name: str,
        role_name: str,
        retention_in_days: int = 30,
        permissions_boundary: str | None = None,
    ):
        """
        Enable VPC Flow Logs delivered to a CloudWatch log group

        :param log_group_name: name of the CloudWatch log group to create
        :param role_name: name of the IAM role the flow log service assumes
        :param retention_in_days: how long to keep flow log records
        :return:
        """
        self.flow_logs_group = aws.cloudwatch.LogGroup(
            f"{self.name}-flow-logs-group",
            name=log_group_name,
            retention_in_days=retention_in_days,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        role = AWSVpc.create_flow_logs_role(
            name=role_name,
            permissions_boundary=permissions_boundary,
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        aws.ec2.FlowLog(
            f"{self.name}-flow-log",
            iam_role_arn=role.arn,
            log_destination=self.flow_logs_group.arn,
            traffic_type="ALL",
            max_aggregation_interval=60,
            log_format=" ".join([f"${{{field}}}" for field in FLOW_LOG_FIELDS]),
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": f"{self.name}"},
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        return self

    def with_endpoint(
        self,
        service: str,
        region: str,
        security_group_ids: list[pulumi.Output[str]] | list[str] | None = None,
    ):
        """
        Gateway endpoints are used for s3 and dynamodb, interface endpoints for everything else:
         https://docs.aws.amazon.com/vpc/latest/privatelink/aws-services-privatelink-support.html

        Note: in order for Session Manager to reach instances in the private subnets without NAT, endpoints for ssm,
        ec2messages and ssmmessages ought to be created.

        :param service: the short service name, e.g. "s3" or "ssm"
        :param region: the region the VPC lives in
        :param security_group_ids: An optional list of security group ids to associate with an interface endpoint.
        defaults to the vpc_endpoint_sg created in __init__.  This opens it on port 443 to all IPs in the cidr_block
        :return:
        """
        endpoint_type = "Gateway" if service in ("s3", "dynamodb") else "Interface"

        args = aws.ec2.VpcEndpointArgs(
            service_name=f"com.amazonaws.{region}.{service}",
            vpc_endpoint_type=endpoint_type,
            vpc_id=self.vpc.id,
            tags=self.tags | {"Name": f"{self.name}-{service}"},
        )

        if endpoint_type == "Gateway":
            route_table_ids = [rt.id for rt in self.private_route_tables]
            route_table_ids.append(self.public_route_table.id)
            args.route_table_ids = route_table_ids
        else:
            args.private_dns_enabled = True
            args.security_group_ids = [self.vpc_endpoint_sg.id] if security_group_ids is None else security_group_ids
            args.subnet_ids = self.private_subnet_ids

        self.endpoints[service] = aws.ec2.VpcEndpoint(
            f"{self.name}-{service}",
            args,
            opts=pulumi.ResourceOptions(parent=self.vpc),
        )

        return self

    def with_nat_gateways(self, *, single: bool = False):
        """
        Give the private subnets outbound internet access.

        :param single: share one NAT gateway (in the first AZ) between all private route tables instead of one
        per AZ. Cheaper, but outbound traffic from every AZ then depends on a single AZ.
        :return:
        """
        public_subnets = self.subnets["public"][:1] if single else self.subnets["public"]

        for i, subnet in enumerate(public_subnets):
            number = i + 1

            eip = aws.ec2.Eip(
                f"{self.name}-az{number}",
                domain="vpc",
                tags=self.tags | {"Name": f"{self.name}-az{number}"},
                opts=pulumi.ResourceOptions(parent=self.vpc),
            )

            ng = aws.ec2.NatGateway(
                f"{self.name}-az{number}",
                subnet_id=subnet.id,
                allocation_id=eip.id,
                tags=self.tags | {"Name": f"{self.name}-az{number}"},
                opts=pulumi.ResourceOptions(
                    parent=self.vpc,
                    delete_before_replace=True,
                    depends_on=[self.internet_gateway],
                ),
            )

            self.nat_gateways.append(ng)
            self.nat_gw_public_ips.append(ng.public_ip)

        for i, private_rt in enumerate(self.private_route_tables):
            ng = self.nat_gateways[0] if single else self.nat_gateways[i]

            aws.ec2.Route(
                f"{self.name}-nat-az{i + 1}",
                route_table_id=private_rt.id,
                nat_gateway_id=ng.id,
                destination_cidr_block="0.0.0.0/0",
                opts=pulumi.ResourceOptions(parent=private_rt),
            )

        return self

    def with_nacl_rule(
        self,
        port_range: int | range | tuple[int, int],
        cidr_blocks: list[str],
        privacy: str = "public",
        protocol: str = "tcp",
        rule_action: str = "allow",
        *,
        egress: bool = False,
        include_deny: bool = False,
    ):
        """
        Add NACL rules allowing a port range for a number of CIDR blocks to either ingress or egress.
        Optionally add a rule for the port range to/from other destinations/sources to deny ingress after the allows.
        :param port_range: a single port number or either a range or tuple representing the from and to (inclusive)
        :param cidr_blocks: a sequence of CIDR blocks to create NACL rules
        :param privacy: which NACL to modify
        :param egress: True if the rule is an egress rule, otherwise it is an ingress rule. defaults to False.
        :param protocol: 'tcp', 'udp' or 'all'. defaults to 'tcp'.
        :param rule_action: Whether to allow or deny traffic. defaults to 'allow'
        :param include_deny: Whether to add a rule to deny ingress for destinations/sources other than the CIDR blocks.
        :return:
        """
        if len(cidr_blocks) + 1 > NACL_RULE_BLOCK_SIZE:
            msg = f"at most {NACL_RULE_BLOCK_SIZE - 1} cidr blocks may be added in one NACL rule block"
            raise ValueError(msg)

        rule_id = self.next_nacl_rule_ids[privacy][egress]
        nacl = self.nacls[privacy]
        protocol = PROTOCOL_NUMBERS.get(protocol, protocol)

        if isinstance(port_range, int):
            from_port = to_port = port_range
        else:
            from_port = port_range[0]
            to_port = port_range[-1]

        name_prefix = f"{privacy}-{'egress' if egress else 'ingress'}-rule"
        for cidr_block in cidr_blocks:
            aws.ec2.NetworkAclRule(
                f"{self.name}-{name_prefix}-{rule_id}",
                network_acl_id=nacl.id,
                rule_number=rule_id,
                egress=egress,
                protocol=protocol,
                rule_action=rule_action,
                cidr_block=cidr_block,
                from_port=from_port,
                to_port=to_port,
                opts=pulumi.ResourceOptions(parent=nacl, delete_before_replace=True),
            )
            rule_id = rule_id + 1

        if include_deny and not egress:
            aws.ec2.NetworkAclRule(
                f"{self.name}-{name_prefix}-{rule_id}",
                network_acl_id=nacl.id,
                rule_number=rule_id,
                egress=False,
                protocol=protocol,
                rule_action="deny",
                cidr_block="0.0.0.0/0",
                from_port=from_port,
                to_port=to_port,
                opts=pulumi.ResourceOptions(parent=nacl, delete_before_replace=True),
            )

        self.next_nacl_rule_ids[privacy][egress] += NACL_RULE_BLOCK_SIZE

        return self

    def with_secure_default_security_group(self):
        """
        Manage the default security group by removing its ingress and egress rules in order to comply with
        Security Hub control EC2.2

        https://docs.aws.amazon.com/securityhub/latest/userguide/ec2-controls.html#ec2-2
        :return:
        """
        aws.ec2.DefaultSecurityGroup(
            f"{self.name}-default",
            vpc_id=self.vpc.id,
            opts=pulumi.ResourceOptions(parent=self),
        )

        return self

    def with_secure_default_nacl(self):
        """
        Manage the default network acl by removing its ingress and egress rules in order to comply with
        Security Hub control EC2.21

        https://docs.aws.amazon.com/securityhub/latest/userguide/ec2-controls.html#ec2-21
        :return:
        """
        aws.ec2.DefaultNetworkAcl(
            f"{self.name}-default",
            default_network_acl_id=self.vpc.default_network_acl_id,
            opts=pulumi.ResourceOptions(parent=self),
        )

        return self
