import collections

import pulumi
import pulumi_aws as aws

import webstack
import webstack.aws_stack
from webstack.pulumi_resources import StrInput
from webstack.pulumi_resources.lib import dashify


class AWSDns(pulumi.ComponentResource):
    """
    Hosted zones, TLS certificates and alias records for every site in the stack.

    Sites sharing a domain share one zone and one certificate covering the domain and its
    wildcard.
    """

    name: str
    stack: webstack.aws_stack.AWSStack
    tags: dict[str, str]

    domains_to_sites: dict[str, list[tuple[str, webstack.aws_stack.AWSSiteConfig]]]
    zones: dict[str, aws.route53.Zone]
    certificates: dict[str, aws.acm.Certificate]
    certificate_arns_by_domain: dict[str, StrInput]
    cert_validation_records: dict[str, pulumi.Output[list[aws.route53.Record]]]
    alias_records: dict[str, aws.route53.Record]

    def __init__(
        self,
        stack: webstack.aws_stack.AWSStack,
        *args,
        **kwargs,
    ):
        self.name = stack.compound_name
        self.stack = stack
        self.tags = stack.required_tags
        self.zones = {}
        self.certificates = {}
        self.certificate_arns_by_domain = {}
        self.cert_validation_records = {}
        self.alias_records = {}

        super().__init__(f"webstack:{self.__class__.__name__}", self.name, *args, **kwargs)

        self.domains_to_sites = collections.defaultdict(list)
        for site_name, site in sorted(stack.cfg.sites.items()):
            self.domains_to_sites[site.domain].append((site_name, site))

        for domain, sites_for_domain in self.domains_to_sites.items():
            # the first site for a domain decides zone and certificate settings
            primary_site_name, primary_site = sites_for_domain[0]
            for site_name, site in sites_for_domain[1:]:
                if (site.zone_id, site.certificate_arn) != (primary_site.zone_id, primary_site.certificate_arn):
                    pulumi.warn(
                        f"site {site_name!r} shares domain {domain!r} with site {primary_site_name!r}; "
                        f"its zone_id and certificate_arn are ignored",
                        self,
                    )

            self.zones[domain] = self._define_hosted_zone(domain, primary_site.zone_id)
            self._define_domain_cert(domain, primary_site)

        self.register_outputs(
            {
                "certificate_arns": self.certificate_arns,
                "name_servers": self.name_servers,
            }
        )

    @property
    def certificate_arns(self) -> list[StrInput]:
        """Certificate arns with the main site's certificate first."""
        main_domain = self.stack.cfg.domain
        domains = sorted(self.certificate_arns_by_domain, key=lambda d: (d != main_domain, d))
        return [self.certificate_arns_by_domain[d] for d in domains]

    @property
    def name_servers(self) -> dict[str, pulumi.Output[list[str]]]:
        return {domain: zone.name_servers for domain, zone in self.zones.items()}

    def _define_hosted_zone(self, domain: str, zone_id: str | None) -> aws.route53.Zone:
        name = f"{domain}-zone"
        if zone_id is not None:
            return aws.route53.Zone.get(name, id=zone_id, opts=pulumi.ResourceOptions(parent=self))

        pulumi.info(f"creating public hosted zone for {domain!r}; delegate to its name servers from the registrar")

        return aws.route53.Zone(
            name,
            name=domain,
            comment=f"Hosted Zone for webstack {self.stack.compound_name}",
            force_destroy=not self.stack.cfg.protect_persistent_resources,
            tags=self.tags | {str(webstack.TagKeys.WEBSTACK_SITE_NAME): domain},
            opts=pulumi.ResourceOptions(
                parent=self,
                protect=self.stack.cfg.protect_persistent_resources,
                ignore_changes=["comment"],
            ),
        )

    def _return_build_validation_function(self, suffix: str, zone: aws.route53.Zone):
        def _build_validation_records(domain_validation_options):
            # the apex and wildcard names validate with the same record
            return [
                aws.route53.Record(
                    f"{self.name}-cert-validation-record-{suffix}-{i}",
                    name=dvo.resource_record_name,
                    records=[dvo.resource_record_value],
                    ttl=60,
                    type=dvo.resource_record_type,
                    zone_id=zone.zone_id,
                    allow_overwrite=True,
                    opts=pulumi.ResourceOptions(
                        parent=zone,
                        delete_before_replace=True,
                    ),
                )
                for i, dvo in enumerate(
                    {dvo.resource_record_value: dvo for dvo in domain_validation_options or []}.values()
                )
            ]

        return _build_validation_records

    def _define_domain_cert(self, domain: str, site: webstack.aws_stack.AWSSiteConfig) -> None:
        if site.certificate_arn:
            self.certificate_arns_by_domain[domain] = site.certificate_arn
            return

        dashify_domain = dashify(domain)
        cert = aws.acm.Certificate(
            f"{self.name}-domain-cert-{dashify_domain}",
            domain_name=domain,
            subject_alternative_names=[f"*.{domain}"],
            validation_method="DNS",
            tags=self.tags | {"Name": f"{self.name}-{dashify_domain}"},
            opts=pulumi.ResourceOptions(parent=self),
        )
        self.certificates[domain] = cert
        self.certificate_arns_by_domain[domain] = cert.arn

        build_validation_records = self._return_build_validation_function(dashify_domain, self.zones[domain])
        records = cert.domain_validation_options.apply(build_validation_records)
        self.cert_validation_records[domain] = records

        validation = aws.acm.CertificateValidation(
            f"{self.name}-cert-validation-{dashify_domain}",
            certificate_arn=cert.arn,
            validation_record_fqdns=records.apply(lambda cvr: sorted([rec.fqdn for rec in cvr])),  # type: ignore
            opts=pulumi.ResourceOptions(parent=cert),
        )
        # listeners must only pick up the certificate once it is issued
        self.certificate_arns_by_domain[domain] = validation.certificate_arn

    def with_alias_records(self, dns_name: StrInput, zone_id: StrInput):
        """
        Point every hostname of every site at the load balancer.

        :param dns_name: the load balancer's DNS name
        :param zone_id: the load balancer's canonical hosted zone id
        :return:
        """
        for domain, sites_for_domain in self.domains_to_sites.items():
            zone = self.zones[domain]
            for site_name, site in sites_for_domain:
                for hostname in site.hostnames():
                    if hostname in self.alias_records:
                        msg = f"Site '{site_name}': hostname {hostname!r} already has an alias record"
                        raise ValueError(msg)

                    self.alias_records[hostname] = aws.route53.Record(
                        f"{self.name}-{dashify(hostname)}",
                        name=hostname,
                        type="A",
                        zone_id=zone.zone_id,
                        aliases=[
                            aws.route53.RecordAliasArgs(
                                name=dns_name,
                                zone_id=zone_id,
                                evaluate_target_health=True,
                            )
                        ],
                        opts=pulumi.ResourceOptions(parent=zone),
                    )

        return self

    def site_urls(self) -> dict[str, list[str]]:
        return {
            site_name: [f"https://{hostname}" for hostname in site.hostnames()]
            for site_name, site in sorted(self.stack.cfg.sites.items())
        }
