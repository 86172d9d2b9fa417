"""Tests for instance tag assembly."""

from iaas_connector.config import TagsConfig
from iaas_connector.models import Options, Tag
from iaas_connector.tags import TagManager


class TestTagManager:
    def test_infrastructure_tag_only(self):
        tags = TagManager(TagsConfig()).retrieve_all_tags("infra-1", None)
        assert tags == [Tag("iaas-connector:infrastructure", "infra-1")]

    def test_defaults_then_request_tags(self):
        manager = TagManager(TagsConfig(defaults={"owner": "ops"}))
        tags = manager.retrieve_all_tags("infra-1", Options(tags=[Tag("env", "prod")]))
        assert tags == [
            Tag("iaas-connector:infrastructure", "infra-1"),
            Tag("owner", "ops"),
            Tag("env", "prod"),
        ]

    def test_request_tag_overrides_default(self):
        manager = TagManager(TagsConfig(defaults={"env": "dev"}))
        tags = manager.retrieve_all_tags("infra-1", Options(tags=[Tag("env", "prod")]))
        assert Tag("env", "prod") in tags
        assert Tag("env", "dev") not in tags
