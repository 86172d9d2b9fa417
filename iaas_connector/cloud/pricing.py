"""AWS pricing catalog queries, normalized into node candidates."""

from __future__ import annotations

import json
import logging
import math
from types import MappingProxyType
from typing import Any, Callable, Mapping

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from ..concurrent_map import ConcurrentMap
from ..config import AWSConfig
from ..exceptions import InvalidRequestError, PricingParseError, ProvisioningError
from ..models import (
    Hardware,
    Image,
    Infrastructure,
    NodeCandidate,
    OperatingSystem,
    PagedNodeCandidates,
)

logger = logging.getLogger(__name__)

CLOUD_TYPE = "aws-ec2"
SERVICE_CODE = "AmazonEC2"

# AWS region code -> location label used by the pricing catalog
_AWS_PRICING_REGION_LABELS = {
    "af-south-1": "Africa (Cape Town)",
    "ap-east-1": "Asia Pacific (Hong Kong)",
    "ap-south-1": "Asia Pacific (Mumbai)",
    "ap-northeast-3": "Asia Pacific (Osaka)",
    "ap-northeast-2": "Asia Pacific (Seoul)",
    "ap-southeast-1": "Asia Pacific (Singapore)",
    "ap-southeast-2": "Asia Pacific (Sydney)",
    "ap-northeast-1": "Asia Pacific (Tokyo)",
    "ca-central-1": "Canada (Central)",
    "eu-central-1": "EU (Frankfurt)",
    "eu-west-1": "EU (Ireland)",
    "eu-west-2": "EU (London)",
    "eu-south-1": "EU (Milan)",
    "eu-west-3": "EU (Paris)",
    "eu-north-1": "EU (Stockholm)",
    "me-south-1": "Middle East (Bahrain)",
    "sa-east-1": "South America (Sao Paulo)",
    "us-east-1": "US East (N. Virginia)",
    "us-east-2": "US East (Ohio)",
    "us-west-1": "US West (N. California)",
    "us-west-2": "US West (Oregon)",
}


def default_region_labels() -> Mapping[str, str]:
    """Read-only region label table, built once at start-up and shared by reference."""
    return MappingProxyType(dict(_AWS_PRICING_REGION_LABELS))


def parse_capacity(value: str) -> int:
    """Parse a memory or clock speed attribute into the catalog's "MB" scale (value x 1024, rounded).

    "8 GiB" -> 8192, "Up to 3.1 GHz" -> 3174 (the third of four tokens is the ceiling),
    "NA" -> 0. Non-numeric content raises PricingParseError.
    """
    tokens = value.split(" ")
    try:
        if len(tokens) == 1:
            return 0
        if len(tokens) == 2:
            number = float(tokens[0].replace(",", ""))
        elif len(tokens) == 4:
            number = float(tokens[2].replace(",", ""))
        else:
            number = 0.0
    except ValueError as exc:
        logger.error("Error while parsing numeric answer %r from the AWS pricing API: %s", value, exc)
        raise PricingParseError(f"Cannot parse {value!r} as a capacity", raw_value=value) from exc
    if not math.isfinite(number):
        raise PricingParseError(f"Cannot parse {value!r} as a capacity", raw_value=value)
    # Half-up rounding, not Python's round-half-even.
    return int(math.floor(number * 1024 + 0.5))


def parse_on_demand_price(terms: dict[str, Any]) -> float:
    """Lowest USD price across every on-demand offer term and price dimension; 0 when there is none."""
    prices: list[float] = []
    for offer_term in (terms.get("OnDemand") or {}).values():
        for dimension in (offer_term.get("priceDimensions") or {}).values():
            usd = dimension.get("pricePerUnit", {}).get("USD")
            if usd is None:
                continue
            try:
                price = float(usd)
            except ValueError as exc:
                logger.error("Error while parsing price %r from the AWS pricing API: %s", usd, exc)
                raise PricingParseError(f"Cannot parse {usd!r} as a price", raw_value=str(usd)) from exc
            if not math.isfinite(price):
                raise PricingParseError(f"Cannot parse {usd!r} as a price", raw_value=str(usd))
            prices.append(price)
    return min(prices, default=0.0)


def _default_pricing_client_factory(aws_config: AWSConfig) -> Callable[[Infrastructure], Any]:
    def _build(infrastructure: Infrastructure):
        session_kwargs: dict[str, Any] = {}
        if infrastructure.credentials.username:
            session_kwargs["aws_access_key_id"] = infrastructure.credentials.username
            session_kwargs["aws_secret_access_key"] = infrastructure.credentials.password
        session = boto3.Session(**session_kwargs)
        logger.debug("Connecting to the pricing catalog", extra={"infrastructure_id": infrastructure.id})
        return session.client("pricing", region_name=aws_config.pricing_region)

    return _build


class PricingCatalogClient:
    """Pages through the EC2 price list for one region and operating system.

    One pricing client is built per infrastructure value and reused until
    ``remove_client`` drops it.
    """

    def __init__(
        self,
        aws_config: AWSConfig,
        region_labels: Mapping[str, str],
        client_factory: Callable[[Infrastructure], Any] | None = None,
    ):
        self._region_labels = region_labels
        self._client_factory = client_factory or _default_pricing_client_factory(aws_config)
        self._clients: ConcurrentMap[Infrastructure, Any] = ConcurrentMap()

    def remove_client(self, infrastructure: Infrastructure) -> None:
        self._clients.pop(infrastructure)

    def query_candidates(
        self, infrastructure: Infrastructure, region: str, os_filter: str, page_token: str | None = None,
    ) -> PagedNodeCandidates:
        """Return one page of node candidates. An empty next_token ends the scan."""
        label = self._region_labels.get(region)
        if label is None:
            raise InvalidRequestError(f"Region '{region}' has no pricing catalog label")

        request: dict[str, Any] = {
            "ServiceCode": SERVICE_CODE,
            "Filters": [
                _term("location", label),
                _term("operatingSystem", os_filter),
                _term("capacitystatus", "Used"),
                _term("tenancy", "Shared"),
                _term("preInstalledSw", "NA"),
            ],
        }
        if page_token:
            request["NextToken"] = page_token

        client = self._clients.compute_if_absent(infrastructure, self._client_factory)
        try:
            response = client.get_products(**request)
        except ClientError as exc:
            if exc.response.get("Error", {}).get("Code") == "InvalidNextTokenException":
                logger.info("Pricing catalog rejected page token, ending scan", extra={"region": region})
                return PagedNodeCandidates(next_token="", node_candidates=set())
            raise ProvisioningError(f"Pricing catalog query failed: {exc}") from exc
        except BotoCoreError as exc:
            raise ProvisioningError(f"Pricing catalog query failed: {exc}") from exc

        price_list = response.get("PriceList") or []
        if not price_list:
            logger.info("No node candidate found", extra={"region": region})
            return PagedNodeCandidates(next_token="", node_candidates=set())

        candidates = {self._to_candidate(entry, region) for entry in price_list}
        logger.info("%d node candidates were found.", len(candidates),
                    extra={"region": region, "candidates": len(candidates)})
        return PagedNodeCandidates(next_token=response.get("NextToken") or "", node_candidates=candidates)

    @staticmethod
    def _to_candidate(entry: str | dict[str, Any], region: str) -> NodeCandidate:
        try:
            product = json.loads(entry) if isinstance(entry, str) else entry
        except json.JSONDecodeError as exc:
            raise PricingParseError(f"Price list entry is not valid JSON: {exc}", raw_value=entry) from exc
        try:
            attributes = product["product"]["attributes"]
            operating_system = attributes["operatingSystem"]
            hardware = Hardware(
                min_ram=str(parse_capacity(attributes["memory"])),
                min_cores=attributes["vcpu"],
                min_freq=str(parse_capacity(attributes["clockSpeed"])) if "clockSpeed" in attributes else "0",
                type=attributes["instanceType"],
            )
        except (KeyError, TypeError) as exc:
            raise PricingParseError(f"Price list entry has no usable attribute {exc}") from exc

        # The catalog has no image ids; the OS label stands in for the image and is matched elsewhere.
        image = Image(name=operating_system, location=region,
                      operating_system=OperatingSystem(family=operating_system))
        return NodeCandidate(
            cloud=CLOUD_TYPE,
            region=region,
            hardware=hardware,
            price=parse_on_demand_price(product.get("terms") or {}),
            image=image,
        )


def _term(field: str, value: str) -> dict[str, str]:
    return {"Type": "TERM_MATCH", "Field": field, "Value": value}
