"""Tests for the EC2 provisioning provider."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, call

import pytest

from iaas_connector.cloud.aws_provider import AWSEC2Provider
from iaas_connector.cloud.cache import ComputeServiceCache
from iaas_connector.cloud.nodes import ElasticAddress, Location, NodeHardware, NodeMetadata
from iaas_connector.cloud.template import TemplateBuilder
from iaas_connector.config import AWSConfig, TagsConfig
from iaas_connector.exceptions import (
    InstanceNotFoundError,
    InvalidRequestError,
    ProvisioningError,
    PublicIpExhaustedError,
)
from iaas_connector.models import (
    Hardware,
    Infrastructure,
    Instance,
    InstanceCredentials,
    Options,
    RunScriptOptions,
    Tag,
)
from iaas_connector.tags import TagManager

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

INFRA = Infrastructure(id="infra-1", region="eu-west-1")
NOW = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _node(node_id="eu-west-1/i-1", group="web", public=(), location=None) -> NodeMetadata:
    region, provider_id = node_id.split("/", 1) if "/" in node_id else ("eu-west-1", node_id)
    return NodeMetadata(
        id=node_id,
        provider_id=provider_id,
        name=provider_id,
        group=group,
        status="RUNNING",
        hardware=NodeHardware(type="t3.micro", cores=2.0),
        location=location or Location(id=f"{region}a", scope="ZONE", parent=Location(id=region)),
        image_id="ami-123",
        public_addresses=tuple(public),
    )


class _Harness:
    def __init__(self, config: AWSConfig | None = None, tags: TagsConfig | None = None):
        self.service = MagicMock()
        self.service.template_builder.side_effect = lambda: TemplateBuilder(self.service.resolve_hardware)
        self.service.resolve_hardware.return_value = "t3.medium"
        self.service.create_nodes_in_group.side_effect = (
            lambda group, count, template: [_node(f"eu-west-1/i-{n}", group) for n in range(count)]
        )
        self.builds: list[Infrastructure] = []
        self.compute_services = ComputeServiceCache(lambda infra: self.builds.append(infra) or self.service)
        self.credentials = MagicMock()
        self.credentials.vm_user_login = "ec2-user"
        self.credentials.ensure_credentials.return_value = InstanceCredentials(
            username="ec2-user", public_key_name="default-eu-west-1-abc",
        )
        self.security_groups = MagicMock()
        self.security_groups.find_in_region.return_value = None
        self.security_groups.create_in_region.side_effect = (
            lambda infra, region, name, description, vpc_id=None: f"sg-{name}"
        )
        self.security_groups.subnet_vpc.return_value = "vpc-9"
        self.pricing = MagicMock()
        self.provider = AWSEC2Provider(
            aws_config=config or AWSConfig(node_running_timeout_ms=600_000),
            compute_services=self.compute_services,
            credential_store=self.credentials,
            security_groups=self.security_groups,
            pricing=self.pricing,
            tag_manager=TagManager(tags or TagsConfig()),
            clock=lambda: NOW,
        )

    def template(self):
        return self.service.create_nodes_in_group.call_args.args[2]


def _request(**overrides) -> Instance:
    fields = {"tag": "web", "image": "eu-west-1/ami-123", "hardware": Hardware(type="t3.micro")}
    fields.update(overrides)
    return Instance(**fields)


# ---------------------------------------------------------------------------
# Instance creation
# ---------------------------------------------------------------------------


class TestCreateInstance:
    def test_named_type_skips_floors(self):
        h = _Harness()
        created = h.provider.create_instance(INFRA, _request(hardware=Hardware(type="t3.micro", min_ram="x")))
        h.service.resolve_hardware.assert_not_called()
        assert h.template().hardware_id == "t3.micro"
        assert h.template().location_id == "eu-west-1"
        assert [i.id for i in created] == ["eu-west-1/i-0"]
        assert created[0].tag == "web"
        assert created[0].image == "eu-west-1/ami-123"

    def test_floors_resolve_hardware(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(hardware=Hardware(min_ram="2048", min_cores="1.5")))
        h.service.resolve_hardware.assert_called_once_with("eu-west-1", 2048, 1.5)
        assert h.template().hardware_id == "t3.medium"

    def test_blank_type_uses_floors(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(hardware=Hardware(type="  ", min_ram="1024", min_cores="1")))
        h.service.resolve_hardware.assert_called_once()

    @pytest.mark.parametrize("hardware", [
        Hardware(min_ram="lots", min_cores="2"),
        Hardware(min_ram="1024", min_cores="many"),
        Hardware(min_ram="1024"),
        None,
    ])
    def test_invalid_floors(self, hardware):
        h = _Harness()
        with pytest.raises(InvalidRequestError):
            h.provider.create_instance(INFRA, _request(hardware=hardware))
        h.service.create_nodes_in_group.assert_not_called()

    def test_number_launches_that_many(self):
        h = _Harness()
        created = h.provider.create_instance(INFRA, _request(number="3"))
        assert h.service.create_nodes_in_group.call_args.args[:2] == ("web", 3)
        assert len(created) == 3

    @pytest.mark.parametrize("number", ["zero", "0", "-2"])
    def test_invalid_number(self, number):
        with pytest.raises(InvalidRequestError):
            _Harness().provider.create_instance(INFRA, _request(number=number))

    def test_tag_required(self):
        with pytest.raises(InvalidRequestError):
            _Harness().provider.create_instance(INFRA, _request(tag=None))

    def test_image_required(self):
        with pytest.raises(InvalidRequestError):
            _Harness().provider.create_instance(INFRA, _request(image=""))

    def test_backend_failure_wrapped(self):
        h = _Harness()
        h.service.create_nodes_in_group.side_effect = RuntimeError("capacity")
        with pytest.raises(ProvisioningError, match="capacity") as exc_info:
            h.provider.create_instance(INFRA, _request())
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_provisioning_error_passes_through(self):
        h = _Harness()
        original = ProvisioningError("quota exceeded")
        h.service.create_nodes_in_group.side_effect = original
        with pytest.raises(ProvisioningError) as exc_info:
            h.provider.create_instance(INFRA, _request())
        assert exc_info.value is original

    def test_empty_result(self):
        h = _Harness()
        h.service.create_nodes_in_group.side_effect = None
        h.service.create_nodes_in_group.return_value = []
        assert h.provider.create_instance(INFRA, _request()) == []


class TestTagsAndCredentials:
    def test_tags_applied(self):
        h = _Harness(tags=TagsConfig(defaults={"owner": "ops", "env": "dev"}))
        options = Options(security_group_names=["sg-1"], tags=[Tag("env", "prod")])
        h.provider.create_instance(INFRA, _request(options=options))
        assert h.template().options.user_metadata == {
            "iaas-connector:infrastructure": "infra-1", "owner": "ops", "env": "prod",
        }

    def test_default_credentials_used(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request())
        h.credentials.ensure_credentials.assert_called_once()
        assert h.template().options.key_pair == "default-eu-west-1-abc"
        assert h.template().options.login_user == "ec2-user"

    def test_explicit_credentials_skip_default(self):
        h = _Harness()
        creds = InstanceCredentials(username="ubuntu", public_key_name="mine")
        h.provider.create_instance(INFRA, _request(credentials=creds))
        h.credentials.ensure_credentials.assert_not_called()
        assert h.template().options.key_pair == "mine"
        assert h.template().options.login_user == "ubuntu"

    def test_no_credentials_launches_without_key(self):
        h = _Harness()
        h.credentials.ensure_credentials.return_value = None
        h.provider.create_instance(INFRA, _request())
        assert h.template().options.key_pair is None
        h.service.create_nodes_in_group.assert_called_once()


class TestOptions:
    def test_spot_valid_until_uses_clock(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options(spot_price="0.05", security_group_names=["g"])))
        options = h.template().options
        assert options.spot_price == 0.05
        assert options.spot_valid_until == NOW + timedelta(minutes=10)

    def test_invalid_spot_price(self):
        h = _Harness()
        with pytest.raises(InvalidRequestError, match="spot price"):
            h.provider.create_instance(INFRA, _request(options=Options(spot_price="cheap")))

    def test_no_options_no_security_group(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request())
        assert h.template().options.security_groups == []
        h.security_groups.create_in_region.assert_not_called()

    def test_explicit_security_groups_used_verbatim(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options(security_group_names=["a", "sg-1"],
                                                                   subnet_id="subnet-9")))
        assert h.template().options.security_groups == ["a", "sg-1"]
        assert h.template().options.subnet_id == "subnet-9"
        h.security_groups.create_in_region.assert_not_called()
        assert h.provider.auto_generated_groups.groups_for("infra-1") == frozenset()

    def test_shared_group_created_once_with_ssh(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options()))
        h.provider.create_instance(INFRA, _request(options=Options()))
        h.security_groups.create_in_region.assert_called_once()
        h.security_groups.allow_port.assert_called_once_with(INFRA, "eu-west-1", "sg-iaas-connector#infra-1", 22)
        assert h.template().options.security_groups == ["iaas-connector#infra-1"]
        assert h.provider.auto_generated_groups.groups_for("infra-1") == {"iaas-connector#infra-1"}

    def test_existing_shared_group_reused(self):
        h = _Harness()
        h.security_groups.find_in_region.return_value = "sg-existing"
        h.provider.create_instance(INFRA, _request(options=Options()))
        h.security_groups.create_in_region.assert_not_called()
        assert h.template().options.security_groups == ["iaas-connector#infra-1"]

    def test_port_launches_get_distinct_groups(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options(ports_to_open=[80, -1])))
        first = h.template().options.security_groups[0]
        h.provider.create_instance(INFRA, _request(options=Options(ports_to_open=[443])))
        second = h.template().options.security_groups[0]

        assert first != second
        assert first.startswith("iaas-connector#infra-1-")
        assert second.startswith("iaas-connector#infra-1-")
        assert h.provider.auto_generated_groups.groups_for("infra-1") == {first, second}
        assert h.security_groups.allow_port.call_args_list == [
            call(INFRA, "eu-west-1", f"sg-{first}", 80),
            call(INFRA, "eu-west-1", f"sg-{first}", -1),
            call(INFRA, "eu-west-1", f"sg-{second}", 443),
        ]

    def test_subnet_launch_uses_group_id_in_subnet_vpc(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options(subnet_id="subnet-9")))
        options = h.template().options
        assert options.subnet_id == "subnet-9"
        assert options.security_groups == ["sg-iaas-connector#infra-1"]
        h.security_groups.subnet_vpc.assert_called_once_with(INFRA, "eu-west-1", "subnet-9")
        h.security_groups.find_in_region.assert_called_once_with(INFRA, "eu-west-1", "iaas-connector#infra-1", "vpc-9")
        assert h.security_groups.create_in_region.call_args.args[4] == "vpc-9"
        assert h.provider.auto_generated_groups.groups_for("infra-1") == {"iaas-connector#infra-1"}

    def test_subnet_port_group_created_in_subnet_vpc(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options(subnet_id="subnet-9", ports_to_open=[443])))
        (group_id,) = h.template().options.security_groups
        name = h.security_groups.create_in_region.call_args.args[2]
        assert group_id == f"sg-{name}"
        assert h.security_groups.create_in_region.call_args.args[4] == "vpc-9"

    def test_shared_group_is_kept_per_vpc(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options()))
        h.provider.create_instance(INFRA, _request(options=Options(subnet_id="subnet-9")))
        h.provider.create_instance(INFRA, _request(options=Options(subnet_id="subnet-9")))
        vpcs = [c.args[4] for c in h.security_groups.create_in_region.call_args_list]
        assert vpcs == [None, "vpc-9"]


# ---------------------------------------------------------------------------
# Queries and deletion
# ---------------------------------------------------------------------------


class TestInstanceQueries:
    def test_get_by_id(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        assert h.provider.get_instance_by_id(INFRA, "eu-west-1/i-1").id == "eu-west-1/i-1"

    def test_get_by_unknown_id(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = None
        with pytest.raises(InstanceNotFoundError):
            h.provider.get_instance_by_id(INFRA, "eu-west-1/i-nope")

    def test_get_by_tag(self):
        h = _Harness()
        h.service.list_nodes.return_value = [_node("eu-west-1/i-1", "web"), _node("eu-west-1/i-2", "db")]
        assert [i.id for i in h.provider.get_instances_by_tag(INFRA, "db")] == ["eu-west-1/i-2"]

    def test_delete_by_tag_delegates(self):
        h = _Harness()
        h.service.destroy_nodes_in_group.return_value = ["eu-west-1/i-1"]
        assert h.provider.delete_instances_by_tag(INFRA, "web") == ["eu-west-1/i-1"]


class TestDeleteInfrastructure:
    def test_deletes_recorded_groups_and_clears_registry(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options()))
        h.provider.create_instance(INFRA, _request(options=Options(ports_to_open=[80])))
        recorded = h.provider.auto_generated_groups.groups_for("infra-1")

        h.provider.delete_infrastructure(INFRA)

        deleted = {c.args[2] for c in h.security_groups.delete_in_region.call_args_list}
        assert deleted == set(recorded)
        assert "infra-1" not in h.provider.auto_generated_groups

        h.security_groups.delete_in_region.reset_mock()
        h.provider.delete_infrastructure(INFRA)
        h.security_groups.delete_in_region.assert_not_called()

    def test_drops_compute_service(self):
        h = _Harness()
        h.compute_services.get_compute_service(INFRA)
        h.provider.delete_infrastructure(INFRA)
        h.pricing.remove_client.assert_called_once_with(INFRA)
        h.compute_services.get_compute_service(INFRA)
        assert h.builds == [INFRA, INFRA]

    def test_shared_group_recreated_after_delete(self):
        h = _Harness()
        h.provider.create_instance(INFRA, _request(options=Options()))
        h.provider.delete_infrastructure(INFRA)
        h.provider.create_instance(INFRA, _request(options=Options()))
        assert h.security_groups.create_in_region.call_count == 2

    def test_failure_keeps_remaining_groups(self):
        h = _Harness()
        h.provider.auto_generated_groups.record("infra-1", "a")
        h.provider.auto_generated_groups.record("infra-1", "b")
        h.security_groups.delete_in_region.side_effect = [None, ProvisioningError("in use")]

        with pytest.raises(ProvisioningError):
            h.provider.delete_infrastructure(INFRA)

        assert h.provider.auto_generated_groups.groups_for("infra-1") == {"b"}


# ---------------------------------------------------------------------------
# Public IPs
# ---------------------------------------------------------------------------


class TestPublicIp:
    def test_desired_ip_associated(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        assert h.provider.add_to_instance_public_ip(INFRA, "eu-west-1/i-1", "9.9.9.9") == "9.9.9.9"
        h.service.associate_address_in_region.assert_called_once_with("eu-west-1", "9.9.9.9", "i-1")
        h.service.describe_addresses_in_region.assert_not_called()

    def test_skips_failing_free_address(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        h.service.describe_addresses_in_region.return_value = [
            ElasticAddress("1.1.1.1", instance_id="i-other"),
            ElasticAddress("2.2.2.2"),
            ElasticAddress("3.3.3.3"),
        ]
        h.service.associate_address_in_region.side_effect = [ProvisioningError("busy"), None]

        assert h.provider.add_to_instance_public_ip(INFRA, "eu-west-1/i-1") == "3.3.3.3"
        h.service.allocate_address_in_region.assert_not_called()

    def test_allocates_when_none_free(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        h.service.describe_addresses_in_region.return_value = [ElasticAddress("1.1.1.1", instance_id="i-other")]
        h.service.allocate_address_in_region.return_value = "4.4.4.4"

        assert h.provider.add_to_instance_public_ip(INFRA, "eu-west-1/i-1") == "4.4.4.4"
        h.service.associate_address_in_region.assert_called_once_with("eu-west-1", "4.4.4.4", "i-1")

    def test_allocation_failure_is_exhaustion(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        h.service.describe_addresses_in_region.return_value = []
        h.service.allocate_address_in_region.side_effect = ProvisioningError("AddressLimitExceeded")
        with pytest.raises(PublicIpExhaustedError, match="All IP addresses are in use"):
            h.provider.add_to_instance_public_ip(INFRA, "eu-west-1/i-1")

    def test_region_found_by_walking_locations(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node("i-1")
        h.service.list_assignable_locations.return_value = {Location(id="eu-west-1")}
        h.provider.add_to_instance_public_ip(INFRA, "i-1", "9.9.9.9")
        h.service.associate_address_in_region.assert_called_once_with("eu-west-1", "9.9.9.9", "i-1")

    def test_region_not_found(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node("i-1")
        h.service.list_assignable_locations.return_value = set()
        with pytest.raises(ProvisioningError, match="region"):
            h.provider.add_to_instance_public_ip(INFRA, "i-1", "9.9.9.9")

    def test_remove_uses_first_public_address(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node(public=("1.2.3.4",))
        h.provider.remove_instance_public_ip(INFRA, "eu-west-1/i-1")
        h.service.disassociate_address_in_region.assert_called_once_with("eu-west-1", "1.2.3.4")

    def test_remove_without_address_is_noop(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        h.provider.remove_instance_public_ip(INFRA, "eu-west-1/i-1")
        h.service.disassociate_address_in_region.assert_not_called()


# ---------------------------------------------------------------------------
# Script options and node candidates
# ---------------------------------------------------------------------------


class TestRunScriptOptions:
    def test_with_credentials(self):
        h = _Harness()
        options = h.provider.get_run_script_options_with_credentials(
            InstanceCredentials(username="ubuntu", private_key="KEY"),
        )
        assert options == RunScriptOptions(login_user="ubuntu", private_key="KEY", run_as_root=False)

    def test_blank_username_falls_back(self):
        h = _Harness()
        options = h.provider.get_run_script_options_with_credentials(InstanceCredentials(username=" "))
        assert options.login_user == "ec2-user"

    def test_default_with_cached_key_pair(self):
        h = _Harness()
        h.service.get_node_metadata.return_value = _node()
        h.credentials.default_key_pair.return_value = ("kp", "PRIVATE")
        options = h.provider.get_default_run_script_options(INFRA, instance_id="eu-west-1/i-1")
        h.credentials.default_key_pair.assert_called_once_with("eu-west-1")
        assert options == RunScriptOptions(login_user="ec2-user", private_key="PRIVATE")

    def test_default_without_key_pair(self):
        h = _Harness()
        h.service.list_nodes.return_value = [_node()]
        h.credentials.default_key_pair.return_value = None
        assert h.provider.get_default_run_script_options(INFRA, instance_tag="web") is RunScriptOptions.NONE

    def test_default_unknown_tag(self):
        h = _Harness()
        h.service.list_nodes.return_value = []
        with pytest.raises(InvalidRequestError, match="tag"):
            h.provider.get_default_run_script_options(INFRA, instance_tag="ghost")


class TestNodeCandidates:
    def test_delegates_to_pricing(self):
        h = _Harness()
        page = MagicMock()
        h.pricing.query_candidates.return_value = page
        assert h.provider.get_node_candidates(INFRA, "eu-west-1", "Linux", "tok") is page
        h.pricing.query_candidates.assert_called_once_with(INFRA, "eu-west-1", "Linux", "tok")
