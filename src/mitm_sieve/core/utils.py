import csv
import io
from typing import Dict, Iterable, List, Mapping, Sequence

from mitmproxy import http

from ..errors import ListImportError

_DEFAULT_PORTS = {"http": 80, "https": 443}


def request_target(request: http.Request) -> str:
    """
    The string filter patterns are matched against.
    CONNECT requests yield ``host:port``; everything else yields the
    host mitmproxy will connect to, its port when it is not the scheme's
    default, then the path and query. The client's Host header is not
    consulted.
    """
    if request.method.upper() == "CONNECT":
        return f"{request.host}:{request.port}"
    authority = request.host
    if request.port != _DEFAULT_PORTS.get(request.scheme):
        authority = f"{authority}:{request.port}"
    return f"{authority}{request.path}"


def rows_from_csv(text: str, required: Sequence[str] = ("uri",)) -> List[Dict[str, str]]:
    """Parses CSV text with a header line into dict rows."""
    reader = csv.DictReader(io.StringIO(text))
    header = [name.strip().lower() for name in (reader.fieldnames or [])]
    missing = [name for name in required if name not in header]
    if missing:
        raise ListImportError(f"CSV header is missing: {', '.join(missing)}")

    rows = []
    for row in reader:
        rows.append({
            (key or "").strip().lower(): (value or "").strip() if isinstance(value, str) else value
            for key, value in row.items()
        })
    return rows


def rows_to_csv(rows: Iterable[Mapping[str, object]], fieldnames: Sequence[str]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(fieldnames), lineterminator="\n")
    writer.writeheader()
    for row in rows:
        writer.writerow({name: row.get(name, "") for name in fieldnames})
    return buffer.getvalue()
