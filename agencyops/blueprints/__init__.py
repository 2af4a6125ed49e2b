"""
Agency Operations Platform
Blueprint registry.
"""

from flask import g, request


def paginate_query(query, default_limit=100, max_limit=500):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 100, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def acting():
    """The caller's ActingContext, set by the identity middleware."""
    return g.acting


def read_upload():
    """Return ``(bytes, content_type, filename)`` of the multipart ``file`` part.

    Returns None when the request carries no file.
    """
    upload = request.files.get("file")
    if upload is None:
        return None
    return upload.read(), upload.mimetype, upload.filename
