import re
from collections.abc import Mapping
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{([^}]+)\}")
_WHITESPACE_RUN_RE = re.compile(r"\s+")


def template_builtins(row: Mapping[str, Any]) -> dict[str, str]:
    category = row.get("exec_search_category") or ""
    return {
        "Executive_Name": row.get("executive_name") or "",
        "Executive_Role": row.get("executive_role") or "",
        "Executive_LinkedIn": row.get("executive_linkedin") or "",
        "Email": row.get("email") or "",
        "Company_Name": row.get("company_name") or "",
        "Domain": row.get("domain") or "",
        "Exec Category": category,
        "Exec_Category": category,
    }


def render_template(template: str | None, row: Mapping[str, Any], snippets: Mapping[str, str]) -> str:
    """Fill ``{Placeholder}`` tokens from the record, then from snippets.

    Unknown placeholders render as an empty string. Snippet keys also match
    with inner whitespace replaced by underscores.
    """
    builtins = template_builtins(row)

    def replace(match: re.Match[str]) -> str:
        key = match.group(1).strip()
        if key in builtins:
            return builtins[key]
        if key in snippets:
            return snippets[key] or ""
        normalized = _WHITESPACE_RUN_RE.sub("_", key)
        return snippets.get(normalized) or ""

    return _PLACEHOLDER_RE.sub(replace, template or "")
