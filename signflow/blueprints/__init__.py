"""
SignFlow — Document Signature Workflow
Blueprint registry.
"""

from flask import request


def page_args(default_per_page=20, max_per_page=100):
    """Read page / per_page query params.

    Query params:
        page      — 1-based page number (default 1)
        per_page  — items per page (default default_per_page, capped at max_per_page)

    Returns:
        (page, per_page)
    """
    try:
        page = max(int(request.args.get("page", 1)), 1)
    except (ValueError, TypeError):
        page = 1
    try:
        per_page = min(max(int(request.args.get("per_page", default_per_page)), 1), max_per_page)
    except (ValueError, TypeError):
        per_page = default_per_page
    return page, per_page
