import shortuuid


def generate_shortuuid() -> str:
    return shortuuid.uuid()


def generate_prefixed_id(prefix: str) -> str:
    cleaned = (prefix or "").strip().lower()
    if not cleaned:
        return generate_shortuuid()
    return f"{cleaned}_{shortuuid.uuid()}"
