"""Tags applied to every instance launched for an infrastructure."""

from __future__ import annotations

from .cloud.nodes import INFRASTRUCTURE_TAG_KEY
from .config import TagsConfig
from .models import Options, Tag


class TagManager:
    """Configured default tags, then the request's own tags (a request tag overrides a default with its key)."""

    def __init__(self, tags_config: TagsConfig):
        self._defaults = dict(tags_config.defaults)

    def retrieve_all_tags(self, infrastructure_id: str, options: Options | None) -> list[Tag]:
        tags: dict[str, str] = {INFRASTRUCTURE_TAG_KEY: infrastructure_id, **self._defaults}
        if options is not None:
            for tag in options.tags:
                tags[tag.key] = tag.value
        return [Tag(key, value) for key, value in tags.items()]
