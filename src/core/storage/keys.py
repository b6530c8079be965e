"""Storage key derivation from stored file URLs."""

from urllib.parse import quote, unquote

AWS_HOST_MARKER = ".amazonaws.com/"


def quote_key(key: str) -> str:
    """Percent-encode a storage key for use as a URL path."""
    return quote(key, safe="/")


def extract_storage_key(file_url: str, marker: str = AWS_HOST_MARKER) -> str:
    """
    Derive the blob storage key from a stored file URL.

    The URL path is percent-decoded, so keys containing ``?``, ``#`` or ``%``
    survive the trip through ``public_url``. Returns an empty string when the
    URL matches no known layout; callers treat that as "nothing to delete in
    blob storage".

    Examples:
        >>> extract_storage_key("https://b.s3.ap-northeast-2.amazonaws.com/board/2024/01/f.jpg")
        'board/2024/01/f.jpg'
        >>> extract_storage_key("http://localhost:9000/bucket/board/report%231.pdf")
        'board/report#1.pdf'
        >>> extract_storage_key("not a url")
        ''
    """
    if not file_url:
        return ""
    url = file_url.split("?", 1)[0].split("#", 1)[0]

    start = url.find(marker)
    if start != -1:
        return unquote(url[start + len(marker):])

    # scheme://host/bucket/key
    if "://" not in url:
        return ""
    parts = url.split("/", 4)
    if len(parts) < 5:
        return ""
    return unquote(parts[4])
