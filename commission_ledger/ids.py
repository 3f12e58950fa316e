from uuid import uuid4

PREFIXES = (
    "cm_",
    "cms_",
    "po_",
    "pn_",
    "pge_",
    "prog_",
    "link_",
    "cus_",
    "user_",
)


def create_id(prefix: str = "") -> str:
    if prefix and prefix not in PREFIXES:
        raise ValueError(f"Unknown id prefix: {prefix}")
    return f"{prefix}{uuid4().hex[:24]}"
