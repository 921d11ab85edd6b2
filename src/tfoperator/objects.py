"""Access to ConfigMaps and Secrets.

The reconciler reads var files and environment values from, and writes
connection details to, namespaced config and secret objects. It only sees the
ObjectStore protocol; FileObjectStore keeps the objects as Kubernetes-style
YAML manifests on disk:

    <root>/configmaps/<namespace>/<name>.yaml
    <root>/secrets/<namespace>/<name>.yaml

Secrets use base64 `data` and plain `stringData` the way Kubernetes does.
"""

from __future__ import annotations

import base64
import binascii
import logging
import os
import tempfile
from pathlib import Path
from typing import Protocol

import yaml

from .config import MAX_OBJECT_FILE_SIZE_BYTES
from .spec_loader import SpecLoadError, read_yaml_mapping

logger = logging.getLogger(__name__)

CONFIG_MAPS_DIR = "configmaps"
SECRETS_DIR = "secrets"


class ObjectStoreError(Exception):
    """Raised when an object exists but cannot be read or written."""

    pass


class ObjectStore(Protocol):
    """Namespaced config and secret objects."""

    def get_config_map(self, namespace: str, name: str) -> dict[str, str] | None: ...

    def get_secret(self, namespace: str, name: str) -> dict[str, str] | None: ...

    def put_secret(self, namespace: str, name: str, data: dict[str, str]) -> None: ...

    def delete_secret(self, namespace: str, name: str) -> None: ...


def _validate_segment(value: str, what: str) -> str:
    # SECURITY: names become path segments and must not escape the root
    if not value or "/" in value or value in (".", ".."):
        raise ObjectStoreError(f"Invalid {what}: {value!r}")
    return value


class FileObjectStore:
    """ObjectStore backed by YAML manifests in a directory tree."""

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, kind_dir: str, namespace: str, name: str) -> Path:
        return (
            self._root
            / kind_dir
            / _validate_segment(namespace, "namespace")
            / f"{_validate_segment(name, 'name')}.yaml"
        )

    def _read(self, path: Path) -> dict | None:
        if not path.exists():
            return None
        try:
            return read_yaml_mapping(path, MAX_OBJECT_FILE_SIZE_BYTES)
        except SpecLoadError as e:
            raise ObjectStoreError(str(e)) from e

    def get_config_map(self, namespace: str, name: str) -> dict[str, str] | None:
        manifest = self._read(self._path(CONFIG_MAPS_DIR, namespace, name))
        if manifest is None:
            return None
        data = manifest.get("data") or {}
        if not isinstance(data, dict):
            raise ObjectStoreError(f"ConfigMap {namespace}/{name} data must be a mapping")
        return {str(k): str(v) for k, v in data.items()}

    def get_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        manifest = self._read(self._path(SECRETS_DIR, namespace, name))
        if manifest is None:
            return None

        result: dict[str, str] = {}
        encoded = manifest.get("data") or {}
        plain = manifest.get("stringData") or {}
        if not isinstance(encoded, dict) or not isinstance(plain, dict):
            raise ObjectStoreError(f"Secret {namespace}/{name} data must be a mapping")

        for key, value in encoded.items():
            try:
                result[str(key)] = base64.b64decode(str(value), validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ObjectStoreError(
                    f"Secret {namespace}/{name} key {key!r} is not valid base64 UTF-8"
                ) from e

        # stringData wins over data, as in Kubernetes
        for key, value in plain.items():
            result[str(key)] = str(value)
        return result

    def put_secret(self, namespace: str, name: str, data: dict[str, str]) -> None:
        path = self._path(SECRETS_DIR, namespace, name)
        manifest = {
            "apiVersion": "v1",
            "kind": "Secret",
            "type": "Opaque",
            "metadata": {"name": name, "namespace": namespace},
            "data": {
                key: base64.b64encode(value.encode("utf-8")).decode("ascii")
                for key, value in sorted(data.items())
            },
        }
        content = yaml.safe_dump(manifest, sort_keys=False)

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            # Atomic replace so readers never see a half-written secret
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=".tmp-", suffix=".yaml")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(content)
                os.chmod(tmp_name, 0o600)
                os.replace(tmp_name, path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise ObjectStoreError(f"Failed to write secret {namespace}/{name}: {e}") from e

        logger.info(
            "Wrote connection secret",
            extra={"namespace": namespace, "secret": name, "keys": len(data)},
        )

    def delete_secret(self, namespace: str, name: str) -> None:
        path = self._path(SECRETS_DIR, namespace, name)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            raise ObjectStoreError(f"Failed to delete secret {namespace}/{name}: {e}") from e
