"""
Naming helpers for model and relationship names.

Collections are declared in whatever case the author prefers; model names,
storage names and relationship aliases are all derived here so every
backend and every caller sees the same spelling.

Invariants:
    - pluralize(singularize(w)) is stable for regular English nouns
    - Relationship aliases are lower camel case
    - Functions are pure and never raise on empty input
"""

from __future__ import annotations

import re

_PLURAL_RULES = (
    (re.compile(r"(s|sh|ch|x|z)$"), r"\1es"),
    (re.compile(r"([^aeiou])y$"), r"\1ies"),
    (re.compile(r"(fe|f)$"), "ves"),
    (re.compile(r"$"), "s"),
)

_SINGULAR_RULES = (
    (re.compile(r"(ss|us|is)$"), r"\1"),
    (re.compile(r"ies$"), "y"),
    (re.compile(r"ves$"), "f"),
    (re.compile(r"(s|sh|ch|x|z)es$"), r"\1"),
    (re.compile(r"s$"), ""),
)

_SEPARATOR_RE = re.compile(r"[\s\-]+")
_UNDERSCORES_RE = re.compile(r"_+")
_SLUG_RE = re.compile(r"[^a-z0-9]+")
_WORD_SPLIT_RE = re.compile(r"[^0-9A-Za-z]+")


def _camel_to_snake(text: str) -> str:
    out = []
    prev_lower = prev_upper = prev_digit = False
    for ch in text:
        is_lower = ch.islower()
        is_upper = ch.isupper()
        is_digit = ch.isdigit()
        if (
            (prev_lower and is_upper)
            or (prev_digit and (is_lower or is_upper))
            or (is_digit and (prev_lower or prev_upper))
        ):
            out.append("_")
        out.append(ch.lower())
        prev_lower, prev_upper, prev_digit = is_lower, is_upper, is_digit
    return "".join(out)


def underscore(text: str) -> str:
    """Convert camelCase, PascalCase or kebab-case to snake_case.

    Example:
        >>> underscore("billingClientId")
        'billing_client_id'
    """
    if not text:
        return ""
    result = _camel_to_snake(text).lower()
    result = _SEPARATOR_RE.sub("_", result)
    result = _UNDERSCORES_RE.sub("_", result)
    return result.strip("_")


def camel_case(text: str) -> str:
    """Convert to PascalCase: ``"client_orders"`` -> ``"ClientOrders"``."""
    words = [w for w in _WORD_SPLIT_RE.split(underscore(text)) if w]
    return "".join(w[:1].upper() + w[1:].lower() for w in words)


def to_variable(text: str) -> str:
    """Convert to lower camel case: ``"client_orders"`` -> ``"clientOrders"``."""
    name = camel_case(text)
    return name[:1].lower() + name[1:]


def slugify(text: str) -> str:
    """Lowercase, hyphen-separated slug."""
    return _SLUG_RE.sub("-", underscore(text)).strip("-")


def singularize(word: str) -> str:
    for pattern, replacement in _SINGULAR_RULES:
        if pattern.search(word):
            return pattern.sub(replacement, word, count=1)
    return word


def pluralize(word: str) -> str:
    """Pluralize a word, singularizing it first so plurals stay plural.

    Example:
        >>> pluralize("category")
        'categories'
        >>> pluralize("clients")
        'clients'
    """
    if not word:
        return word
    word = singularize(word)
    for pattern, replacement in _PLURAL_RULES:
        if pattern.search(word):
            return pattern.sub(replacement, word, count=1)
    return word


def model_name(collection: str) -> str:
    """Model name for a declared collection: ``"client_orders"`` -> ``"ClientOrder"``."""
    return camel_case(singularize(underscore(collection)))


def collection_name(collection: str) -> str:
    """Storage name for a declared collection: ``"ClientOrder"`` -> ``"client_orders"``."""
    return underscore(pluralize(underscore(collection)))


def parent_relative_name(foreign_key: str) -> str:
    """Alias under which a child model reaches its parent.

    The ``Id`` suffix is dropped (``clientId`` -> ``client``). When nothing
    would change, ``Info`` is appended to avoid clashing with the stored
    column (``client`` -> ``clientInfo``).
    """
    alias = to_variable(foreign_key)
    key = underscore(foreign_key)
    if key.endswith("_id"):
        alias = to_variable(key[: -len("_id")])
    if alias == foreign_key or alias == singularize(foreign_key):
        alias = to_variable(underscore(foreign_key) + "_info")
    return alias


def child_relative_name(parent: str, child: str, foreign_key: str) -> str:
    """Alias under which a parent model reaches its children.

    Edges named after the parent collapse to the plural child name
    (``Client`` + ``Invoice`` via ``clientId`` -> ``invoices``). Any other
    edge is prefixed with the key so several edges into the same parent
    stay distinct (``billingClientId`` -> ``billingClientInvoices``).
    """
    key = underscore(foreign_key)
    if key.endswith("_id"):
        stem = to_variable(key[: -len("_id")])
        alias = to_variable(child)
        if to_variable(parent) != stem:
            alias = to_variable(f"{stem}_{child}")
    else:
        alias = to_variable(f"{key}_{child}")
    return pluralize(alias)
