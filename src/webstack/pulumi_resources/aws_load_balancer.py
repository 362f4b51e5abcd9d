import pulumi
import pulumi_aws as aws

import webstack
from webstack.pulumi_resources import StrInput
from webstack.pulumi_resources.lib import lb_name, lb_name_prefix

# https://docs.aws.amazon.com/elasticloadbalancing/latest/application/listener-update-rules.html
MAX_CONDITION_VALUES_PER_RULE = 5
MAX_VALUES_PER_CONDITION = 3


def chunk_host_headers(hostnames: list[str], path_pattern_count: int) -> list[list[str]]:
    """Split hostnames across as many listener rules as the per-rule condition value limits require."""
    if path_pattern_count > MAX_VALUES_PER_CONDITION:
        msg = f"at most {MAX_VALUES_PER_CONDITION} path patterns may be routed to one target, got {path_pattern_count}"
        raise ValueError(msg)

    if not hostnames:
        return [[]]

    size = min(MAX_VALUES_PER_CONDITION, MAX_CONDITION_VALUES_PER_RULE - path_pattern_count)
    return [hostnames[i : i + size] for i in range(0, len(hostnames), size)]


class AWSLoadBalancer(pulumi.ComponentResource):
    """
    An application load balancer terminating TLS for every site in the stack.

    Plain HTTP is always redirected to HTTPS. Requests that match no target's listener rule
    get a fixed 404 from the HTTPS listener.
    """

    name: str
    vpc_id: StrInput
    tags: dict[str, str]

    security_group: aws.ec2.SecurityGroup
    load_balancer: aws.lb.LoadBalancer
    http_listener: aws.lb.Listener
    https_listener: aws.lb.Listener | None
    target_groups: dict[str, aws.lb.TargetGroup]
    listener_rules: dict[str, list[aws.lb.ListenerRule]]
    priorities: dict[int, str]

    def __init__(
        self,
        name: str,
        vpc_id: StrInput,
        subnet_ids: list[pulumi.Output[str]],
        tags: dict[str, str],
        ingress_cidrs: list[str] | None = None,
        internal: bool = False,
        idle_timeout: int = 60,
        deletion_protection: bool = False,
        access_logs_bucket: StrInput | None = None,
        *args,
        **kwargs,
    ):
        super().__init__(f"webstack:{self.__class__.__name__}", name, *args, **kwargs)

        self.name = name
        self.vpc_id = vpc_id
        self.tags = tags
        self.https_listener = None
        self.target_groups = {}
        self.listener_rules = {}
        self.priorities = {}

        if ingress_cidrs is None:
            ingress_cidrs = ["0.0.0.0/0"]

        if len(subnet_ids) < 2:  # noqa: PLR2004
            pulumi.warn(
                f"load balancer {name} spans a single subnet; application load balancers require at least two "
                "availability zones",
                self,
            )

        self.security_group = aws.ec2.SecurityGroup(
            f"{name}-lb",
            description=f"{name} load balancer",
            name_prefix=f"{name}-lb-",
            vpc_id=vpc_id,
            ingress=[
                aws.ec2.SecurityGroupIngressArgs(
                    description=f"{port_name} from allowed ranges",
                    from_port=port,
                    to_port=port,
                    protocol="tcp",
                    cidr_blocks=ingress_cidrs,
                )
                for port_name, port in (("HTTP", 80), ("HTTPS", 443))
            ],
            egress=[
                aws.ec2.SecurityGroupEgressArgs(
                    from_port=0,
                    to_port=0,
                    protocol="-1",
                    cidr_blocks=["0.0.0.0/0"],
                )
            ],
            tags=self.tags | {"Name": f"{name}-lb"},
            opts=pulumi.ResourceOptions(parent=self),
        )

        access_logs = None
        if access_logs_bucket is not None:
            access_logs = aws.lb.LoadBalancerAccessLogsArgs(
                bucket=access_logs_bucket,
                enabled=True,
            )

        self.load_balancer = aws.lb.LoadBalancer(
            name,
            name=lb_name(name),
            internal=internal,
            load_balancer_type="application",
            security_groups=[self.security_group.id],
            subnets=subnet_ids,
            idle_timeout=idle_timeout,
            drop_invalid_header_fields=True,
            enable_deletion_protection=deletion_protection,
            access_logs=access_logs,
            tags=self.tags | {"Name": name},
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.http_listener = aws.lb.Listener(
            f"{name}-http",
            load_balancer_arn=self.load_balancer.arn,
            port=80,
            protocol="HTTP",
            default_actions=[
                aws.lb.ListenerDefaultActionArgs(
                    type="redirect",
                    redirect=aws.lb.ListenerDefaultActionRedirectArgs(
                        port="443",
                        protocol="HTTPS",
                        status_code="HTTP_301",
                    ),
                )
            ],
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self.load_balancer),
        )

        self.register_outputs(
            {
                "arn": self.load_balancer.arn,
                "dns_name": self.load_balancer.dns_name,
                "zone_id": self.load_balancer.zone_id,
                "security_group_id": self.security_group.id,
            }
        )

    def with_https_listener(
        self,
        certificate_arns: list[StrInput],
        ssl_policy: str = webstack.DEFAULT_SSL_POLICY,
    ):
        """
        Terminate TLS on :443. The first certificate is the listener default; the rest are
        served by SNI.

        :param certificate_arns: ACM certificate arns, at least one
        :param ssl_policy: the ELB security policy negotiating protocol and ciphers
        :return:
        """
        if len(certificate_arns) == 0:
            msg = f"load balancer {self.name} needs at least one certificate for its HTTPS listener"
            raise ValueError(msg)

        if self.https_listener is not None:
            msg = f"load balancer {self.name} already has an HTTPS listener"
            raise ValueError(msg)

        self.https_listener = aws.lb.Listener(
            f"{self.name}-https",
            load_balancer_arn=self.load_balancer.arn,
            port=443,
            protocol="HTTPS",
            ssl_policy=ssl_policy,
            certificate_arn=certificate_arns[0],
            default_actions=[
                aws.lb.ListenerDefaultActionArgs(
                    type="fixed-response",
                    fixed_response=aws.lb.ListenerDefaultActionFixedResponseArgs(
                        content_type="text/plain",
                        message_body="Not Found",
                        status_code="404",
                    ),
                )
            ],
            tags=self.tags,
            opts=pulumi.ResourceOptions(parent=self.load_balancer),
        )

        for i, arn in enumerate(certificate_arns[1:]):
            aws.lb.ListenerCertificate(
                f"{self.name}-https-cert-{i + 1}",
                listener_arn=self.https_listener.arn,
                certificate_arn=arn,
                opts=pulumi.ResourceOptions(parent=self.https_listener),
            )

        return self

    def with_target(
        self,
        app_name: str,
        port: int,
        priority: int,
        hostnames: list[str] | None = None,
        path_patterns: list[str] | None = None,
        protocol: str = "HTTP",
        health_check_path: str = "/",
        health_check_matcher: str = "200-399",
        deregistration_delay: int = 30,
    ) -> aws.lb.TargetGroup:
        """
        Route requests for the given hostnames and paths to a new instance target group.

        When the hostnames don't fit into a single listener rule, further rules are added at
        consecutive priorities after `priority`.

        :return: the target group, for attaching an auto-scaling group
        """
        if self.https_listener is None:
            msg = f"load balancer {self.name} has no HTTPS listener; call with_https_listener first"
            raise ValueError(msg)

        if app_name in self.target_groups:
            msg = f"load balancer {self.name} already routes to app {app_name!r}"
            raise ValueError(msg)

        hostnames = hostnames or []
        path_patterns = path_patterns or []
        host_chunks = chunk_host_headers(hostnames, len(path_patterns))

        for i in range(len(host_chunks)):
            if priority + i in self.priorities:
                msg = (
                    f"listener rule priority {priority + i} for app {app_name!r} is already used by "
                    f"app {self.priorities[priority + i]!r}"
                )
                raise ValueError(msg)

        target_group = aws.lb.TargetGroup(
            f"{self.name}-{app_name}",
            name_prefix=lb_name_prefix(app_name),
            target_type="instance",
            port=port,
            protocol=protocol,
            vpc_id=self.vpc_id,
            deregistration_delay=deregistration_delay,
            health_check=aws.lb.TargetGroupHealthCheckArgs(
                enabled=True,
                path=health_check_path,
                port="traffic-port",
                protocol=protocol,
                matcher=health_check_matcher,
                interval=30,
                timeout=5,
                healthy_threshold=3,
                unhealthy_threshold=3,
            ),
            stickiness=aws.lb.TargetGroupStickinessArgs(
                type="lb_cookie",
                enabled=False,
            ),
            tags=self.tags | {"Name": f"{self.name}-{app_name}", str(webstack.TagKeys.WEBSTACK_APP_NAME): app_name},
            opts=pulumi.ResourceOptions(parent=self.load_balancer),
        )

        rules = []
        for i, chunk in enumerate(host_chunks):
            conditions = []
            if chunk:
                conditions.append(
                    aws.lb.ListenerRuleConditionArgs(
                        host_header=aws.lb.ListenerRuleConditionHostHeaderArgs(values=chunk),
                    )
                )
            if path_patterns:
                conditions.append(
                    aws.lb.ListenerRuleConditionArgs(
                        path_pattern=aws.lb.ListenerRuleConditionPathPatternArgs(values=path_patterns),
                    )
                )
            if not conditions:
                msg = f"app {app_name!r} needs at least one hostname or path pattern to be routable"
                raise ValueError(msg)

            suffix = "" if i == 0 else f"-{i + 1}"
            rules.append(
                aws.lb.ListenerRule(
                    f"{self.name}-{app_name}{suffix}",
                    listener_arn=self.https_listener.arn,
                    priority=priority + i,
                    actions=[
                        aws.lb.ListenerRuleActionArgs(
                            type="forward",
                            target_group_arn=target_group.arn,
                        )
                    ],
                    conditions=conditions,
                    tags=self.tags,
                    opts=pulumi.ResourceOptions(parent=self.https_listener),
                )
            )
            self.priorities[priority + i] = app_name

        self.target_groups[app_name] = target_group
        self.listener_rules[app_name] = rules

        pulumi.log.debug(f"routing {hostnames or ['*']} {path_patterns} to {app_name} at priority {priority}", self)

        return target_group
