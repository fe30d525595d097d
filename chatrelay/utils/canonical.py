import orjson


def canonical_bytes(d: dict) -> bytes:
    # sort keys & remove whitespace
    return orjson.dumps(d, option=orjson.OPT_SORT_KEYS)


def pair_key(a: str, b: str) -> str:
    """Order-independent key for an unordered pair of identity ids."""
    lo, hi = sorted((a, b))
    return f"{lo}:{hi}"
