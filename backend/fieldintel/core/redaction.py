"""Helpers for keeping secrets out of logs and responses."""


def preview_secret(value: str | None, visible: int = 6) -> str:
    """Return a short, non-reversible preview of a secret.

    Only the first ``visible`` characters and the total length are shown, e.g.
    ``"00D5g0...(len=112)"``. Short values are fully masked.

    Args:
        value: The secret to preview.
        visible: Number of leading characters to keep.

    Returns:
        The preview string.
    """
    if not value:
        return "<empty>"
    if len(value) <= visible * 2:
        return f"***(len={len(value)})"
    return f"{value[:visible]}...(len={len(value)})"
