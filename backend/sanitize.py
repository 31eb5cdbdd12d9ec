import html as html_lib

import bleach

# Tags the card editor can produce, including nested lists.
ALLOWED_TAGS = frozenset(["p", "br", "b", "i", "strong", "em", "u", "ul", "ol", "li"])
ALLOWED_CLASS_PREFIXES = ("ql-indent-", "ql-list-")
LIST_ITEM_ATTRIBUTES = ("data-list", "data-checked")


def _allow_attribute(tag: str, name: str, value: str) -> bool:
    if name == "class":
        classes = value.split()
        return bool(classes) and all(cls.startswith(ALLOWED_CLASS_PREFIXES) for cls in classes)
    if tag == "li" and name in LIST_ITEM_ATTRIBUTES:
        return bool(value)
    return False


def sanitize_html(html: str) -> str:
    """Keep only the editor's formatting tags; disallowed tags are dropped but
    their text is kept."""
    if not html:
        return ""
    return bleach.clean(html, tags=ALLOWED_TAGS, attributes=_allow_attribute, strip=True)


def strip_html(html: str) -> str:
    if not html:
        return ""
    return html_lib.unescape(bleach.clean(html, tags=set(), strip=True))


def text_length(html: str) -> int:
    """Visible character count of rich text, used for the card body limit."""
    return len(strip_html(html))
