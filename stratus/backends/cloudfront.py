from __future__ import annotations

import logging

from botocore.exceptions import BotoCoreError, ClientError, WaiterError

from stratus.backends.aws import adapter_error, client_for, error_code
from stratus.backends.base import AdapterError, DeleteOutcome, Distribution, ResourceHandle, origin_host
from stratus.config import Settings
from stratus.services.constants import RESOURCE_DISTRIBUTION

logger = logging.getLogger(__name__)

ORIGIN_ID = "compute"
# AWS managed policies: CachingDisabled and AllViewerExceptHostHeader.
CACHE_POLICY_ID = "4135ea2d-6df8-44a3-9df3-4b5a84be39ad"
ORIGIN_REQUEST_POLICY_ID = "b689b0a8-53d0-40ab-baf2-68738e2966ac"
_DEPLOYED_WAITER_CONFIG = {"Delay": 30, "MaxAttempts": 60}
_ALL_METHODS = ["GET", "HEAD", "OPTIONS", "PUT", "POST", "PATCH", "DELETE"]


def _origin_domain(origin_url: str) -> str:
    domain = origin_host(origin_url)
    if not domain:
        raise AdapterError(f"Cannot derive an origin domain from {origin_url!r}")
    return domain


def _compute_origin(origins: dict | None) -> dict | None:
    for origin in (origins or {}).get("Items") or []:
        if origin.get("Id") == ORIGIN_ID:
            return origin
    return None


class CloudFrontEdgeBackend:
    """Fronts each function URL with a CloudFront distribution tagged by its alias."""

    def __init__(self, client, *, certificate_arn: str | None = None) -> None:
        self._cloudfront = client
        self._certificate_arn = certificate_arn

    @classmethod
    def from_settings(cls, settings: Settings) -> "CloudFrontEdgeBackend":
        return cls(client_for(settings, "cloudfront"), certificate_arn=settings.certificate_arn)

    def find_distribution(self, alias: str) -> Distribution | None:
        try:
            paginator = self._cloudfront.get_paginator("list_distributions")
            for page in paginator.paginate():
                for item in page.get("DistributionList", {}).get("Items", []) or []:
                    if item.get("Comment") == alias:
                        return self._to_distribution(item, alias)
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to list distributions while looking for {alias}", exc) from exc
        return None

    def publish(self, alias: str, origin_url: str, *, hostname: str) -> Distribution:
        logger.info("Creating distribution %s for %s -> %s", alias, hostname, origin_url)
        try:
            response = self._cloudfront.create_distribution(
                DistributionConfig=self._distribution_config(alias, _origin_domain(origin_url), hostname)
            )
        except ClientError as exc:
            if error_code(exc) == "DistributionAlreadyExists":
                if (existing := self.find_distribution(alias)) is not None:
                    return existing
            raise adapter_error(f"Failed to create distribution {alias}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to create distribution {alias}", exc) from exc
        return self._to_distribution(response["Distribution"], alias)

    def update_origin(self, distribution_handle: str, origin_url: str) -> Distribution:
        domain = _origin_domain(origin_url)
        try:
            current = self._cloudfront.get_distribution_config(Id=distribution_handle)
            config, etag = current["DistributionConfig"], current["ETag"]
            origin = _compute_origin(config.get("Origins"))
            if origin is None:
                raise AdapterError(f"Distribution {distribution_handle} has no '{ORIGIN_ID}' origin")
            logger.info("Repointing distribution %s from %s to %s", distribution_handle, origin.get("DomainName"), domain)
            origin["DomainName"] = domain
            response = self._cloudfront.update_distribution(
                Id=distribution_handle, IfMatch=etag, DistributionConfig=config
            )
        except (ClientError, BotoCoreError) as exc:
            raise adapter_error(f"Failed to update the origin of distribution {distribution_handle}", exc) from exc
        return self._to_distribution(response["Distribution"], config.get("Comment", ""))

    def unpublish(self, distribution_handle: str) -> DeleteOutcome:
        """Disable the distribution, wait for the change to deploy, then delete it."""
        try:
            try:
                current = self._cloudfront.get_distribution_config(Id=distribution_handle)
            except ClientError as exc:
                if error_code(exc) == "NoSuchDistribution":
                    return DeleteOutcome.NOT_FOUND
                raise
            config, etag = current["DistributionConfig"], current["ETag"]
            if config.get("Enabled"):
                logger.info("Disabling distribution %s", distribution_handle)
                config["Enabled"] = False
                etag = self._cloudfront.update_distribution(
                    Id=distribution_handle, IfMatch=etag, DistributionConfig=config
                )["ETag"]
            self._cloudfront.get_waiter("distribution_deployed").wait(
                Id=distribution_handle, WaiterConfig=_DEPLOYED_WAITER_CONFIG
            )
            self._cloudfront.delete_distribution(Id=distribution_handle, IfMatch=etag)
        except WaiterError as exc:
            raise AdapterError(
                f"Distribution {distribution_handle} did not finish disabling: {exc}", category="retryable"
            ) from exc
        except ClientError as exc:
            if error_code(exc) == "NoSuchDistribution":
                return DeleteOutcome.NOT_FOUND
            raise adapter_error(f"Failed to delete distribution {distribution_handle}", exc) from exc
        except BotoCoreError as exc:
            raise adapter_error(f"Failed to delete distribution {distribution_handle}", exc) from exc
        logger.info("Deleted distribution %s", distribution_handle)
        return DeleteOutcome.DELETED

    def _to_distribution(self, item: dict, alias: str) -> Distribution:
        # List summaries carry Origins at the top level, full distributions inside DistributionConfig.
        origins = item.get("Origins") or item.get("DistributionConfig", {}).get("Origins")
        origin = _compute_origin(origins)
        return Distribution(
            handle=ResourceHandle(RESOURCE_DISTRIBUTION, item["Id"], alias),
            domain=item["DomainName"],
            origin_domain=origin.get("DomainName") if origin else None,
        )

    def _distribution_config(self, alias: str, origin_domain: str, hostname: str) -> dict:
        if self._certificate_arn:
            aliases = {"Quantity": 1, "Items": [hostname]}
            certificate = {
                "ACMCertificateArn": self._certificate_arn,
                "SSLSupportMethod": "sni-only",
                "MinimumProtocolVersion": "TLSv1.2_2021",
            }
        else:
            aliases = {"Quantity": 0}
            certificate = {"CloudFrontDefaultCertificate": True}
        return {
            "CallerReference": alias,
            "Comment": alias,
            "Enabled": True,
            "Aliases": aliases,
            "Origins": {
                "Quantity": 1,
                "Items": [
                    {
                        "Id": ORIGIN_ID,
                        "DomainName": origin_domain,
                        "CustomOriginConfig": {
                            "HTTPPort": 80,
                            "HTTPSPort": 443,
                            "OriginProtocolPolicy": "https-only",
                            "OriginSslProtocols": {"Quantity": 1, "Items": ["TLSv1.2"]},
                        },
                    }
                ],
            },
            "DefaultCacheBehavior": {
                "TargetOriginId": ORIGIN_ID,
                "ViewerProtocolPolicy": "redirect-to-https",
                "AllowedMethods": {
                    "Quantity": len(_ALL_METHODS),
                    "Items": _ALL_METHODS,
                    "CachedMethods": {"Quantity": 2, "Items": ["GET", "HEAD"]},
                },
                "CachePolicyId": CACHE_POLICY_ID,
                "OriginRequestPolicyId": ORIGIN_REQUEST_POLICY_ID,
                "Compress": True,
            },
            "ViewerCertificate": certificate,
            "PriceClass": "PriceClass_100",
            "HttpVersion": "http2",
        }
