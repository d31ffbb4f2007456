from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Iterable

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from teed_api.models import Profile, ReferralChain


_LOCK = Lock()
_HTTP_REQUESTS: Counter[tuple[str, str, str]] = Counter()
_HTTP_LATENCY_BUCKETS_S: tuple[float, ...] = (
    0.01,
    0.025,
    0.05,
    0.1,
    0.25,
    0.5,
    1.0,
    2.5,
    5.0,
)
_HTTP_LATENCY_BINS: dict[tuple[str, str], list[int]] = {}
_HTTP_LATENCY_SUM_S: dict[tuple[str, str], float] = {}
_HTTP_LATENCY_COUNT: dict[tuple[str, str], int] = {}

_REFERRAL_OUTCOMES: Counter[str] = Counter()


def observe_http_request(
    *,
    path: str,
    method: str,
    status: str,
    duration_ms: float | None = None,
) -> None:
    key = (str(path), str(method), str(status))
    latency_key = (str(path), str(method))

    dur_s: float | None = None
    if duration_ms is not None:
        dur_s = max(0.0, float(duration_ms) / 1000.0)

    with _LOCK:
        _HTTP_REQUESTS[key] += 1
        if dur_s is None:
            return
        bins = _HTTP_LATENCY_BINS.get(latency_key)
        if bins is None:
            bins = [0] * (len(_HTTP_LATENCY_BUCKETS_S) + 1)
            _HTTP_LATENCY_BINS[latency_key] = bins
        idx = next(
            (i for i, edge in enumerate(_HTTP_LATENCY_BUCKETS_S) if dur_s <= edge),
            len(_HTTP_LATENCY_BUCKETS_S),
        )
        bins[idx] += 1
        _HTTP_LATENCY_SUM_S[latency_key] = _HTTP_LATENCY_SUM_S.get(latency_key, 0.0) + dur_s
        _HTTP_LATENCY_COUNT[latency_key] = _HTTP_LATENCY_COUNT.get(latency_key, 0) + 1


def inc_referral_attribution(outcome: str) -> None:
    with _LOCK:
        _REFERRAL_OUTCOMES[str(outcome)] += 1


def referral_attribution_counts() -> dict[str, int]:
    with _LOCK:
        return dict(_REFERRAL_OUTCOMES)


def _fmt_labels(**labels: str) -> str:
    def esc(value: str) -> str:
        return str(value).replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')

    parts = [f'{k}="{esc(v)}"' for k, v in labels.items()]
    return "{" + ",".join(parts) + "}" if parts else ""


def _render_simple(
    *,
    name: str,
    kind: str,
    help_text: str,
    rows: Iterable[tuple[dict[str, str], int]],
) -> str:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} {kind}"]
    for labels, value in rows:
        lines.append(f"{name}{_fmt_labels(**labels)} {int(value)}")
    return "\n".join(lines) + "\n"


def _render_histogram(
    *,
    name: str,
    help_text: str,
    rows: Iterable[tuple[dict[str, str], list[int], float, int]],
) -> str:
    lines = [f"# HELP {name} {help_text}", f"# TYPE {name} histogram"]
    for labels, bin_counts, sum_s, count in rows:
        cumulative = 0
        for i, edge in enumerate(_HTTP_LATENCY_BUCKETS_S):
            cumulative += bin_counts[i]
            lines.append(f"{name}_bucket{_fmt_labels(**labels, le=str(edge))} {cumulative}")
        cumulative += bin_counts[-1]
        lines.append(f"{name}_bucket{_fmt_labels(**labels, le='+Inf')} {cumulative}")
        lines.append(f"{name}_sum{_fmt_labels(**labels)} {sum_s:.6f}")
        lines.append(f"{name}_count{_fmt_labels(**labels)} {count}")
    return "\n".join(lines) + "\n"


def render_prometheus_metrics(*, db: Session) -> str:
    with _LOCK:
        http_items = sorted(_HTTP_REQUESTS.items())
        latency_items = sorted(
            (
                key,
                list(bins),
                _HTTP_LATENCY_SUM_S.get(key, 0.0),
                _HTTP_LATENCY_COUNT.get(key, 0),
            )
            for key, bins in _HTTP_LATENCY_BINS.items()
        )
        outcome_items = sorted(_REFERRAL_OUTCOMES.items())

    out: list[str] = [
        _render_simple(
            name="teed_http_requests_total",
            kind="counter",
            help_text="Total HTTP requests processed by this API process.",
            rows=[
                ({"path": path, "method": method, "status": status}, count)
                for (path, method, status), count in http_items
            ],
        ),
        _render_histogram(
            name="teed_http_request_duration_seconds",
            help_text="HTTP request duration (seconds) by route template and method.",
            rows=[
                ({"path": path, "method": method}, bins, sum_s, count)
                for ((path, method), bins, sum_s, count) in latency_items
            ],
        ),
        _render_simple(
            name="teed_referral_attributions_total",
            kind="counter",
            help_text="Referral attribution attempts by outcome (in-process).",
            rows=[({"outcome": outcome}, count) for outcome, count in outcome_items],
        ),
    ]

    profiles = int(db.scalar(select(func.count(Profile.id))) or 0)
    chains = int(db.scalar(select(func.count(ReferralChain.id))) or 0)
    out.append(
        _render_simple(
            name="teed_profiles",
            kind="gauge",
            help_text="Profiles stored.",
            rows=[({}, profiles)],
        )
    )
    out.append(
        _render_simple(
            name="teed_referral_chains",
            kind="gauge",
            help_text="Referral chain rows stored.",
            rows=[({}, chains)],
        )
    )
    return "\n".join(out)
