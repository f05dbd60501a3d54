import uuid


def gen_id(prefix: str) -> str:
    """Opaque row id such as ``sale_<32 hex>``; the prefix names the table."""
    return f"{prefix}_{uuid.uuid4().hex}"
