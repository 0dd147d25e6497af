"""Identifier quoting for table and column names taken from entity definitions."""

# PostgreSQL truncates identifiers beyond this length
MAX_IDENTIFIER_LENGTH = 63


def quote_ident(name: str) -> str:
    """
    Double-quote one identifier, doubling any embedded quote.

    Valid for both PostgreSQL and SQLite.

    Raises:
        ValueError: Empty, non-string or over-long identifier
    """
    if not isinstance(name, str) or not name:
        raise ValueError(f"Invalid SQL identifier: {name!r}")
    if len(name) > MAX_IDENTIFIER_LENGTH:
        raise ValueError(
            f"SQL identifier {name!r} exceeds {MAX_IDENTIFIER_LENGTH} characters"
        )
    return '"' + name.replace('"', '""') + '"'


def quote_table(table: str) -> str:
    """
    Quote ``table`` or ``schema.table`` as configured in entities.yml.

    Names that already contain quotes are passed through as written.

    Examples:
        >>> quote_table("legacy.dispatch_office")
        '"legacy"."dispatch_office"'
        >>> quote_table("offices")
        '"offices"'
    """
    if not isinstance(table, str) or not table.strip():
        raise ValueError(f"Invalid table name: {table!r}")
    if '"' in table:
        return table
    parts = [part.strip() for part in table.split(".", 1)]
    if len(parts) == 2 and all(parts):
        return ".".join(quote_ident(part) for part in parts)
    return quote_ident(table.strip())
