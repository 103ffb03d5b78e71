"""Loading of the notifier configuration document."""

import logging
from pathlib import Path
from typing import IO
from urllib.parse import quote

import httpx
import yaml
from pydantic import ValidationError

from buildnotify.errors import ConfigError
from buildnotify.gcp import MetadataTokenSource
from buildnotify.models.config import Config

logger = logging.getLogger(__name__)

GCS_URL = "https://storage.googleapis.com/storage/v1"


class StrictLoader(yaml.SafeLoader):
    """SafeLoader that rejects duplicate mapping keys."""

    def construct_mapping(self, node, deep=False):
        keys = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in keys:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            keys.add(key)
        return super().construct_mapping(node, deep=deep)


def decode_config(source: str | bytes | IO) -> Config:
    """Strictly decode a YAML config document.

    Unknown fields, duplicate keys, unsupported `apiVersion` values and
    malformed substitution names are all rejected.
    """
    try:
        data = yaml.load(source, Loader=StrictLoader)
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse config YAML: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError("config document must be a YAML mapping")

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        raise ConfigError(f"invalid config: {e}") from e


def load_config(config_path: str | Path) -> Config:
    """Load a config document from the local filesystem."""
    path = Path(config_path)
    if not path.exists():
        raise ConfigError(f"config not found: {path}")

    with open(path, "r", encoding="utf-8") as f:
        return decode_config(f)


def split_gcs_path(path: str) -> tuple[str, str]:
    """Split `gs://bucket/path/to/object` into bucket and object names."""
    if not path.startswith("gs://"):
        raise ConfigError(f"expected {path!r} to start with `gs://`")
    bucket, _, obj = path[len("gs://"):].partition("/")
    if not bucket or not obj:
        raise ConfigError(
            f"path has incorrect format (expected form: `gs://bucket/path/to/object`): {path!r}"
        )
    return bucket, obj


async def fetch_gcs_config(
    path: str, client: httpx.AsyncClient, tokens: MetadataTokenSource, base_url: str = GCS_URL
) -> Config:
    """Download and decode a config document stored in Cloud Storage."""
    bucket, obj = split_gcs_path(path)
    url = f"{base_url}/b/{quote(bucket, safe='')}/o/{quote(obj, safe='')}"
    logger.debug(f"Fetching config from bucket={bucket!r} object={obj!r}")
    try:
        response = await client.get(url, params={"alt": "media"}, headers=await tokens.headers())
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise ConfigError(f"failed to read config from {path!r}: {e}") from e
    return decode_config(response.text)


async def get_config(
    path: str, client: httpx.AsyncClient, tokens: MetadataTokenSource
) -> Config:
    """Fetch the config from Cloud Storage or, failing a `gs://` prefix, from disk."""
    if path.startswith("gs://"):
        return await fetch_gcs_config(path, client, tokens)
    return load_config(path)
