"""
Cache storage names for borger.dk articles.

A cache entry is named ``<domain>__<articleId>__<municipalityId>.json`` with
the dots of the domain replaced by underscores, e.g.
``www_borger_dk__42__0.json``. Nothing else in the package should build or
split these names.
"""
import re

from borgersync.core.article import ArticleKey
from borgersync.errors import MalformedKey

SEPARATOR = "__"
EXTENSION = ".json"

_INTEGER = re.compile(r"-?\d+")


def format_storage_name(key: ArticleKey) -> str:
    """
    Build the storage name (without extension) for an article key.

    Args:
        key: The article key

    Returns:
        The storage name
    """
    domain = key.domain.replace(".", "_")
    return SEPARATOR.join([domain, str(key.article_id), str(key.municipality_id)])


def file_name(key: ArticleKey) -> str:
    return format_storage_name(key) + EXTENSION


def parse_storage_name(name: str) -> ArticleKey:
    """
    Parse a storage name (with or without extension) into an article key.

    A missing municipality segment defaults to 0. A name without an article
    segment, such as ``www_borger_dk.json``, is malformed.

    Args:
        name: The storage or file name

    Returns:
        The parsed article key

    Raises:
        MalformedKey: If the article segment is missing, or the article or
            municipality segments are not integers
    """
    stem = name.split(".")[0]
    if SEPARATOR not in stem:
        raise MalformedKey(name)
    pieces = (stem + SEPARATOR + "0" + SEPARATOR + "0").split(SEPARATOR)

    domain = pieces[0].replace("_", ".")
    if not domain or not _INTEGER.fullmatch(pieces[1]) or not _INTEGER.fullmatch(pieces[2]):
        raise MalformedKey(name)

    return ArticleKey(domain, int(pieces[1]), int(pieces[2]))
