"""In-memory ConfigMaps and Secrets."""

from __future__ import annotations

from tfoperator.objects import ObjectStoreError


class InMemoryObjectStore:
    """ObjectStore keeping objects in dictionaries keyed by (namespace, name)."""

    def __init__(self) -> None:
        self.config_maps: dict[tuple[str, str], dict[str, str]] = {}
        self.secrets: dict[tuple[str, str], dict[str, str]] = {}
        self.secret_writes = 0
        self.fail_writes = False

    def add_config_map(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self.config_maps[(namespace, name)] = dict(data)

    def add_secret(self, namespace: str, name: str, data: dict[str, str]) -> None:
        self.secrets[(namespace, name)] = dict(data)

    def get_config_map(self, namespace: str, name: str) -> dict[str, str] | None:
        data = self.config_maps.get((namespace, name))
        return dict(data) if data is not None else None

    def get_secret(self, namespace: str, name: str) -> dict[str, str] | None:
        data = self.secrets.get((namespace, name))
        return dict(data) if data is not None else None

    def put_secret(self, namespace: str, name: str, data: dict[str, str]) -> None:
        if self.fail_writes:
            raise ObjectStoreError(f"Injected write failure for {namespace}/{name}")
        self.secrets[(namespace, name)] = dict(data)
        self.secret_writes += 1

    def delete_secret(self, namespace: str, name: str) -> None:
        self.secrets.pop((namespace, name), None)
