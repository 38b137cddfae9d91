# /utils/text.py
# Helpers for file content and prompt text: binary detection, base64 decoding, truncation and titles.
import base64


BINARY_EXTS = {
    ".png", ".jpg", ".jpeg", ".gif", ".webp", ".ico",
    ".pdf", ".zip", ".tar", ".gz", ".7z", ".rar",
    ".exe", ".dll", ".so", ".dylib",
    ".mp3", ".mp4", ".mov", ".avi", ".mkv",
    ".woff", ".woff2", ".ttf", ".otf",
}

LOADING_MARKER = "still loading"


def is_probably_binary_bytes(b: bytes) -> bool:
    if not b:
        return False
    if b"\x00" in b:
        return True
    # heuristic: lots of non-text control chars
    ctrl = sum(1 for x in b[:4000] if x < 9 or (13 < x < 32))
    return ctrl / max(1, min(len(b), 4000)) > 0.08


def safe_b64decode(s: str) -> bytes:
    return base64.b64decode(s.encode("utf-8"), validate=False)


def truncate(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    head = int(max_chars * 0.75)
    tail = max_chars - head
    return text[:head].rstrip() + "\n...\n" + text[-tail:].lstrip()


def make_title(text: str, max_chars: int = 50) -> str:
    """Conversation title from a question: at most max_chars, ellipsised when cut."""
    text = " ".join(text.split())
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


def has_usable_context(text: str | None) -> bool:
    # the browser sends placeholder text while the tree/README are still being fetched
    return bool(text) and LOADING_MARKER not in text


def has_binary_extension(path: str) -> bool:
    name = path.rsplit("/", 1)[-1].lower()
    return "." in name and "." + name.rsplit(".", 1)[-1] in BINARY_EXTS
