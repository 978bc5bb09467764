"""
Response representations and Accept-header negotiation.

Only the settings view offers HTML; every other route is JSON only and never calls
`negotiate`.
"""
from enum import Enum
from html import escape
from typing import Any, Dict, Optional, Sequence


class Representation(str, Enum):
    JSON = "application/json"
    HTML = "text/html"


def _quality(media_type: str, accept: str) -> float:
    """q-value the Accept header gives `media_type`, using the most specific matching range."""
    main, _, sub = media_type.partition("/")
    best_specificity = -1
    best_q = 0.0
    for part in accept.split(","):
        fields = [f.strip() for f in part.split(";")]
        rng = fields[0].lower()
        if not rng:
            continue
        q = 1.0
        for param in fields[1:]:
            name, _, value = param.partition("=")
            if name.strip().lower() == "q":
                try:
                    q = float(value)
                except ValueError:
                    q = 0.0
        r_main, _, r_sub = rng.partition("/")
        if rng == media_type:
            specificity = 2
        elif r_main == main and r_sub == "*":
            specificity = 1
        elif rng == "*/*":
            specificity = 0
        else:
            continue
        if specificity > best_specificity:
            best_specificity, best_q = specificity, q
    return best_q


def negotiate(accept: Optional[str], supported: Sequence[Representation]) -> Representation:
    """
    Pick the representation the client ranks highest.

    The first entry of `supported` is the default: it wins ties and is used when the
    header is missing, so a generic `*/*` never turns a JSON route into HTML.
    """
    default = supported[0]
    if not accept:
        return default
    chosen, chosen_q = default, _quality(default.value, accept)
    for rep in supported[1:]:
        q = _quality(rep.value, accept)
        if q > chosen_q:
            chosen, chosen_q = rep, q
    return chosen


SETTINGS_PAGE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8" />
  <meta name="viewport" content="width=device-width, initial-scale=1.0" />
  <title>Settings</title>
  <link href="https://cdn.jsdelivr.net/npm/bootstrap@5.3.0/dist/css/bootstrap.min.css" rel="stylesheet">
  <style> body{{padding:20px}} table{{background:#fff}} </style>
</head>
<body>
  <div class="container">
    <h1 class="mb-4">Settings</h1>
    <table class="table table-striped table-bordered w-auto">
      <tbody>
{rows}
      </tbody>
    </table>
    <a href="/" class="btn btn-secondary">Back to App</a>
  </div>
</body>
</html>"""


def _number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    return str(value)


def render_settings(settings: Dict[str, Any]) -> str:
    cells = [
        ("Company Name", escape(str(settings.get("companyName") or ""))),
        ("Currency", escape(str(settings.get("currency") or ""))),
        ("Date Format", escape(str(settings.get("dateFormat") or ""))),
        ("Items Per Page", _number(settings.get("itemsPerPage") or 10)),
        ("Default Cost %", _number(70 if settings.get("defaultCostPercent") is None else settings["defaultCostPercent"]) + "%"),
    ]
    rows = "\n".join(
        f'        <tr><th scope="row">{label}</th><td>{value}</td></tr>' for label, value in cells
    )
    return SETTINGS_PAGE.format(rows=rows)
