import pulumi
import pulumi_aws as aws

import webstack
import webstack.aws_stack
import webstack.pulumi_resources.aws_autoscaling
import webstack.pulumi_resources.aws_bucket
import webstack.pulumi_resources.aws_dns
import webstack.pulumi_resources.aws_load_balancer
import webstack.pulumi_resources.aws_vpc
import webstack.pulumi_resources.aws_waf


class AWSWebStack(pulumi.ComponentResource):
    stack: webstack.aws_stack.AWSStack
    required_tags: dict[str, str]

    vpc: webstack.pulumi_resources.aws_vpc.AWSVpc
    log_bucket: webstack.pulumi_resources.aws_bucket.AWSLogBucket | None
    load_balancer: webstack.pulumi_resources.aws_load_balancer.AWSLoadBalancer
    dns: webstack.pulumi_resources.aws_dns.AWSDns
    app_groups: dict[str, webstack.pulumi_resources.aws_autoscaling.AWSAppGroup]
    waf: webstack.pulumi_resources.aws_waf.AWSWaf | None

    @classmethod
    def autoload(cls) -> "AWSWebStack":
        return cls(stack=webstack.aws_stack.AWSStack(pulumi.get_stack()))

    def __init__(
        self,
        stack: webstack.aws_stack.AWSStack,
        *args,
        **kwargs,
    ):
        super().__init__(
            f"webstack:{self.__class__.__name__}",
            stack.compound_name,
            *args,
            **kwargs,
        )

        self.stack = stack
        self.required_tags = self.stack.required_tags | {
            str(webstack.TagKeys.WEBSTACK_MANAGED_BY): __name__,
        }
        self.app_groups = {}
        self.log_bucket = None
        self.waf = None

        self._define_vpc()
        self._define_log_bucket()
        self._define_load_balancer()
        self._define_dns()
        self.load_balancer.with_https_listener(
            certificate_arns=self.dns.certificate_arns,
            ssl_policy=self.stack.cfg.load_balancer.ssl_policy,
        )
        self._define_app_groups()
        self.dns.with_alias_records(
            dns_name=self.load_balancer.load_balancer.dns_name,
            zone_id=self.load_balancer.load_balancer.zone_id,
        )
        self._define_waf()

        outputs = {
            "vpc_id": self.vpc.vpc.id,
            "public_subnet_ids": self.vpc.public_subnet_ids,
            "private_subnet_ids": self.vpc.private_subnet_ids,
            "load_balancer_dns_name": self.load_balancer.load_balancer.dns_name,
            "load_balancer_arn": self.load_balancer.load_balancer.arn,
            "certificate_arns": self.dns.certificate_arns,
            "hosted_zone_name_servers": self.dns.name_servers,
            "app_autoscaling_group_names": {
                app_name: group.autoscaling_group.name for app_name, group in self.app_groups.items()
            },
            "web_acl_arn": self.waf.web_acl.arn if self.waf is not None else None,
            "log_bucket": self.log_bucket.bucket.bucket if self.log_bucket is not None else None,
            "site_urls": self.dns.site_urls(),
        }

        for key, value in outputs.items():
            pulumi.export(key, value)

        self.register_outputs(outputs)

    def _availability_zone_ids(self) -> list[str]:
        if self.stack.cfg.availability_zone_ids:
            return list(self.stack.cfg.availability_zone_ids)

        azs = aws.get_availability_zones(state="available")
        return list(azs.zone_ids or [])[: self.stack.cfg.vpc_az_count]

    def _define_vpc(self) -> None:
        cfg = self.stack.cfg
        vpc_net = self.stack.vpc_cidr()

        self.vpc = webstack.pulumi_resources.aws_vpc.AWSVpc(
            self.stack.compound_name,
            cidr_block=str(vpc_net),
            azs=self._availability_zone_ids(),
            network_access_tags={
                privacy: {
                    str(webstack.TagKeys.WEBSTACK_NETWORK_ACCESS): privacy,
                    str(webstack.TagKeys.WEBSTACK_MANAGED_BY): __name__,
                }
                for privacy in ("public", "private")
            },
            tags=self.required_tags,
            opts=pulumi.ResourceOptions(parent=self),
        )

        self.vpc.with_nat_gateways(single=cfg.single_nat_gateway)
        self.vpc.with_nacl_rule(port_range=443, cidr_blocks=cfg.load_balancer.ingress_cidrs)
        self.vpc.with_nacl_rule(port_range=80, cidr_blocks=cfg.load_balancer.ingress_cidrs)

        # load balancer to instances, including health checks
        for port in sorted({app.port for app in cfg.apps.values()}):
            self.vpc.with_nacl_rule(port_range=port, cidr_blocks=[str(vpc_net)], privacy="private")
            self.vpc.with_nacl_rule(port_range=port, cidr_blocks=[str(vpc_net)], privacy="public", egress=True)

        self.vpc.with_secure_default_security_group()
        self.vpc.with_secure_default_nacl()

        for service in cfg.vpc_endpoint_services:
            self.vpc.with_endpoint(service=service, region=cfg.region)

        if cfg.flow_logs_enabled:
            self.vpc.with_flow_log(
                log_group_name=self.stack.flow_log_group_name,
                role_name=self.stack.flow_logs_role_name,
                retention_in_days=cfg.flow_log_retention_days,
            )

    def _define_log_bucket(self) -> None:
        lb_cfg = self.stack.cfg.load_balancer
        if not lb_cfg.access_logs_enabled:
            pulumi.log.info(f"{self.stack.compound_name}: load balancer access logs are disabled", self)
            return

        self.log_bucket = webstack.pulumi_resources.aws_bucket.AWSLogBucket(
            self.stack.compound_name,
            bucket_prefix=self.stack.log_bucket_prefix,
            account_id=self.stack.cfg.account_id,
            tags=self.required_tags,
            retention_in_days=lb_cfg.access_log_retention_days,
            protect=self.stack.cfg.protect_persistent_resources,
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_load_balancer(self) -> None:
        lb_cfg = self.stack.cfg.load_balancer

        self.load_balancer = webstack.pulumi_resources.aws_load_balancer.AWSLoadBalancer(
            self.stack.compound_name,
            vpc_id=self.vpc.vpc.id,
            subnet_ids=self.vpc.private_subnet_ids if lb_cfg.internal else self.vpc.public_subnet_ids,
            tags=self.required_tags,
            ingress_cidrs=list(lb_cfg.ingress_cidrs),
            internal=lb_cfg.internal,
            idle_timeout=lb_cfg.idle_timeout,
            deletion_protection=self.stack.cfg.deletion_protection,
            access_logs_bucket=self.log_bucket.bucket.bucket if self.log_bucket is not None else None,
            opts=pulumi.ResourceOptions(
                parent=self,
                depends_on=[self.log_bucket.policy] if self.log_bucket is not None else None,
            ),
        )

    def _define_dns(self) -> None:
        self.dns = webstack.pulumi_resources.aws_dns.AWSDns(
            self.stack,
            opts=pulumi.ResourceOptions(parent=self),
        )

    def _define_app_groups(self) -> None:
        priorities = self.stack.app_priorities()

        for app_name, app in sorted(self.stack.cfg.apps.items()):
            target_group = self.load_balancer.with_target(
                app_name,
                port=app.port,
                priority=priorities[app_name],
                hostnames=self.stack.app_hostnames(app_name),
                path_patterns=list(app.path_patterns),
                protocol=app.protocol,
                health_check_path=app.health_check_path,
                health_check_matcher=app.health_check_matcher,
                deregistration_delay=app.deregistration_delay,
            )

            self.app_groups[app_name] = webstack.pulumi_resources.aws_autoscaling.AWSAppGroup(
                self.stack,
                app_name,
                vpc_id=self.vpc.vpc.id,
                subnet_ids=self.vpc.private_subnet_ids,
                load_balancer_security_group_id=self.load_balancer.security_group.id,
                target_group_arn=target_group.arn,
                opts=pulumi.ResourceOptions(parent=self),
            )

    def _define_waf(self) -> None:
        if not self.stack.cfg.waf.enabled:
            pulumi.warn(f"{self.stack.compound_name}: the web application firewall is disabled", self)
            return

        self.waf = webstack.pulumi_resources.aws_waf.AWSWaf(
            self.stack.compound_name,
            cfg=self.stack.cfg.waf,
            resource_arn=self.load_balancer.load_balancer.arn,
            log_group_name=self.stack.waf_log_group_name,
            tags=self.required_tags,
            opts=pulumi.ResourceOptions(parent=self),
        )
