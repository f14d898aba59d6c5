import copy
from typing import Any, Protocol


class CustomerDirectory(Protocol):
    name: str

    def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        ...

    def get_customer_orders(self, customer_id: str) -> list[dict[str, Any]]:
        ...


class CustomerMutationService(Protocol):
    def add_tag(self, customer_id: str, tag: str) -> None:
        ...

    def update_metafield(self, customer_id: str, key: str, value: Any) -> None:
        ...


def parse_tags(tags: Any) -> list[str]:
    if isinstance(tags, str):
        return [tag.strip() for tag in tags.split(",") if tag.strip()]
    if isinstance(tags, (list, tuple)):
        return [str(tag).strip() for tag in tags if str(tag).strip()]
    return []


class InMemoryCustomerDirectory:
    """Customer directory and mutation service backed by process memory.

    Records follow the storefront shape: ``tags`` is a comma separated string,
    ``default_address`` is a dict, and orders carry ``created_at``,
    ``total_price`` and ``line_items``.
    """

    name = "memory"

    def __init__(self) -> None:
        self._customers: dict[str, dict[str, Any]] = {}
        self._orders: dict[str, list[dict[str, Any]]] = {}

    def upsert_customer(self, customer: dict[str, Any]) -> None:
        customer_id = str(customer["id"])
        self._customers[customer_id] = {**copy.deepcopy(customer), "id": customer_id}

    def add_order(self, customer_id: str, order: dict[str, Any]) -> None:
        self._orders.setdefault(str(customer_id), []).append(copy.deepcopy(order))

    def clear(self) -> None:
        self._customers.clear()
        self._orders.clear()

    def get_customer(self, customer_id: str) -> dict[str, Any] | None:
        customer = self._customers.get(str(customer_id))
        return copy.deepcopy(customer) if customer else None

    def get_customer_orders(self, customer_id: str) -> list[dict[str, Any]]:
        return copy.deepcopy(self._orders.get(str(customer_id), []))

    def add_tag(self, customer_id: str, tag: str) -> None:
        customer = self._customers.get(str(customer_id))
        if customer is None:
            raise LookupError(f"Customer '{customer_id}' not found")
        tags = parse_tags(customer.get("tags"))
        if tag not in tags:
            tags.append(tag)
        customer["tags"] = ", ".join(tags)

    def update_metafield(self, customer_id: str, key: str, value: Any) -> None:
        customer = self._customers.get(str(customer_id))
        if customer is None:
            raise LookupError(f"Customer '{customer_id}' not found")
        metafields = dict(customer.get("metafields") or {})
        metafields[key] = value
        customer["metafields"] = metafields


_CUSTOMER_DIRECTORIES: dict[str, InMemoryCustomerDirectory] = {
    "memory": InMemoryCustomerDirectory(),
}


def get_customer_directory(name: str) -> InMemoryCustomerDirectory:
    normalized = (name or "").strip().lower()
    directory = _CUSTOMER_DIRECTORIES.get(normalized)
    if not directory:
        available = ", ".join(sorted(_CUSTOMER_DIRECTORIES))
        raise ValueError(f"Unknown customer directory '{name}'. Available: {available}")
    return directory
