from __future__ import annotations

"""Session report: built once from the memory store and the action log.

`ReportGenerator.generate` assembles an immutable `CrawlReport`; the
`render_*` functions turn it into JSON, Markdown, HTML and GraphML without touching
any other state, so they can be called any number of times.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple
import html
import json
import logging
import os
import shutil

import networkx as nx

from .knowledge import ActionLog, ActionLogEntry, CrawlSession, LogKind, PageState, SiteGraph
from .memory import MemoryStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PageSummary:
    fingerprint: str
    url: str
    title: str
    depth: int
    links: int
    elements: int
    screenshot_path: Optional[str]
    timestamp: float


@dataclass(frozen=True)
class BlockedAction:
    action: str
    target: str
    url: str
    depth: int
    label: str
    rule: str
    reason: str


@dataclass(frozen=True)
class ErrorRecord:
    action: str
    target: str
    url: str
    reason: str


@dataclass(frozen=True)
class ReportStats:
    pages_visited: int
    errors: int
    actions_blocked: int
    actions_executed: int
    navigations: int
    total_links: int
    max_depth: int
    screenshots: int
    duration_seconds: float


@dataclass(frozen=True)
class CrawlReport:
    session_id: str
    start_url: str
    goal: Optional[str]
    status: str
    termination_reason: str
    started_at: Optional[float]
    ended_at: Optional[float]
    pages: Tuple[PageSummary, ...]
    edges: Tuple[Tuple[str, str, str], ...]  # (from fingerprint, to fingerprint, via)
    blocked: Tuple[BlockedAction, ...]
    errors: Tuple[ErrorRecord, ...]
    stats: ReportStats
    actions: Tuple[ActionLogEntry, ...] = ()  # full action log, in order

    def page_by_fingerprint(self, fingerprint: str) -> Optional[PageSummary]:
        for page in self.pages:
            if page.fingerprint == fingerprint:
                return page
        return None

    def edge_urls(self) -> List[Tuple[str, str]]:
        """Edges expressed as (from url, to url)."""
        urls = {p.fingerprint: p.url for p in self.pages}
        return [(urls[u], urls[v]) for u, v, _ in self.edges]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session": {
                "id": self.session_id,
                "startUrl": self.start_url,
                "goal": self.goal,
                "status": self.status,
                "terminationReason": self.termination_reason,
                "startedAt": _iso(self.started_at),
                "endedAt": _iso(self.ended_at),
            },
            "stats": asdict(self.stats),
            "pages": [asdict(p) for p in self.pages],
            "graph": {
                "nodes": [p.fingerprint for p in self.pages],
                "edges": [{"from": u, "to": v, "via": via} for u, v, via in self.edges],
            },
            "blocked": [asdict(b) for b in self.blocked],
            "errors": [asdict(e) for e in self.errors],
            "actions": [a.to_dict() for a in self.actions],
        }


class ReportGenerator:
    """Builds the report for a finished session."""

    def generate(self, session: CrawlSession, memory: MemoryStore, action_log: ActionLog) -> CrawlReport:
        visited = memory.list_visited()
        graph = self._link_graph(visited, memory, action_log)

        blocked = tuple(
            BlockedAction(
                action=e.action.value,
                target=e.target,
                url=e.url,
                depth=e.depth,
                label=e.label,
                rule=e.rule.value if e.rule else "",
                reason=e.reason,
            )
            for e in action_log.entries(LogKind.BLOCKED)
        )
        errors = tuple(
            ErrorRecord(action=e.action.value, target=e.target, url=e.url, reason=e.reason)
            for e in action_log.entries(LogKind.ERROR)
        )
        counters = session.counters
        stats = ReportStats(
            pages_visited=counters.pages_visited,
            errors=counters.errors,
            actions_blocked=counters.actions_blocked,
            actions_executed=counters.actions_executed,
            navigations=counters.navigations,
            total_links=sum(len(p.links) for p in visited),
            max_depth=max((p.depth for p in visited), default=0),
            screenshots=sum(1 for p in visited if p.screenshot_path),
            duration_seconds=round(session.duration, 3),
        )
        return CrawlReport(
            session_id=session.session_id,
            start_url=session.start_url,
            goal=session.goal,
            status=session.status.value,
            termination_reason=session.termination_reason,
            started_at=session.started_at,
            ended_at=session.ended_at,
            pages=tuple(_summary(p) for p in visited),
            edges=tuple(graph.edges()),
            blocked=blocked,
            errors=errors,
            stats=stats,
            actions=tuple(action_log),
        )

    @staticmethod
    def _link_graph(visited: List[PageState], memory: MemoryStore, action_log: ActionLog) -> SiteGraph:
        """Edges only between pages recorded in this session."""
        graph = SiteGraph()
        by_fp: Dict[str, PageState] = {}
        by_url: Dict[str, PageState] = {}
        for page in visited:
            graph.add_page(page)
            by_fp.setdefault(page.fingerprint, page)
            by_url.setdefault(page.url, page)

        for page in visited:
            for link in page.links:
                target = by_url.get(link) or memory.lookup_url(link)
                if target is not None and target.fingerprint in by_fp:
                    graph.add_edge(page, by_fp[target.fingerprint], via="link")

        # interactions that led from one recorded page to another
        for e in action_log.entries(LogKind.EXECUTED):
            src, dst = by_fp.get(e.from_fingerprint), by_fp.get(e.to_fingerprint)
            if src is not None and dst is not None and e.action.value != "navigate":
                graph.add_edge(src, dst, via=e.action.value)
        return graph

    @staticmethod
    def write(report: CrawlReport, directory: str) -> Dict[str, str]:
        """Write every rendering under `directory` and copy the screenshots next to them.

        The HTML gallery links to `screenshots/<file>` so the directory can be
        moved or archived on its own.
        """
        os.makedirs(directory, exist_ok=True)
        outputs = {
            "json": (os.path.join(directory, "report.json"), render_json(report)),
            "markdown": (os.path.join(directory, "report.md"), render_markdown(report)),
            "html": (os.path.join(directory, "report.html"), render_html(report)),
            "graphml": (os.path.join(directory, "link_graph.graphml"), render_graphml(report)),
        }
        paths: Dict[str, str] = {}
        for kind, (path, content) in outputs.items():
            with open(path, "w", encoding="utf-8") as fh:
                fh.write(content)
            paths[kind] = path
            logger.info("Generated %s report: %s", kind, path)

        copied = ReportGenerator._copy_screenshots(report, os.path.join(directory, "screenshots"))
        if copied:
            logger.info("Copied %d screenshots to %s", copied, directory)
        return paths

    @staticmethod
    def _copy_screenshots(report: CrawlReport, target_dir: str) -> int:
        copied = 0
        for page in report.pages:
            if not page.screenshot_path:
                continue
            if not os.path.exists(page.screenshot_path):
                logger.warning("Screenshot %s is missing; not copied", page.screenshot_path)
                continue
            os.makedirs(target_dir, exist_ok=True)
            shutil.copy2(page.screenshot_path, os.path.join(target_dir, os.path.basename(page.screenshot_path)))
            copied += 1
        return copied


def _summary(page: PageState) -> PageSummary:
    return PageSummary(
        fingerprint=page.fingerprint,
        url=page.url,
        title=page.title,
        depth=page.depth,
        links=len(page.links),
        elements=len(page.elements),
        screenshot_path=page.screenshot_path,
        timestamp=page.timestamp,
    )


def _iso(ts: Optional[float]) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


# ---------------------------------------------------------------------------
# renderers -----------------------------------------------------------------

def render_json(report: CrawlReport) -> str:
    return json.dumps(report.to_dict(), indent=2, ensure_ascii=False)


def render_markdown(report: CrawlReport) -> str:
    s = report.stats
    lines = [
        f"# Crawl report {report.session_id}",
        "",
        f"- **Start URL:** {report.start_url}",
        f"- **Goal:** {report.goal or 'Autonomous exploration'}",
        f"- **Status:** {report.status}" + (f" ({report.termination_reason})" if report.termination_reason else ""),
        f"- **Started:** {_iso(report.started_at) or '-'}",
        f"- **Ended:** {_iso(report.ended_at) or '-'}",
        f"- **Duration:** {s.duration_seconds:.1f}s",
        "",
        "## Statistics",
        "",
        "| Pages | Errors | Blocked | Actions | Links | Max depth | Screenshots |",
        "|---|---|---|---|---|---|---|",
        f"| {s.pages_visited} | {s.errors} | {s.actions_blocked} | {s.actions_executed} | {s.total_links} "
        f"| {s.max_depth} | {s.screenshots} |",
        "",
        "## Pages",
        "",
    ]
    if report.pages:
        lines += ["| # | Depth | Title | URL |", "|---|---|---|---|"]
        for i, page in enumerate(report.pages, start=1):
            lines.append(f"| {i} | {page.depth} | {_cell(page.title) or '-'} | {page.url} |")
    else:
        lines.append("No pages recorded.")

    lines += ["", "## Link graph", ""]
    if report.edges:
        lines += [f"- {u} -> {v}" + (f" ({via})" if via != "link" else "") for (u, v), (_, _, via)
                  in zip(report.edge_urls(), report.edges)]
    else:
        lines.append("No edges.")

    lines += ["", "## Blocked actions", ""]
    if report.blocked:
        lines += ["| Action | Target | Rule | Reason |", "|---|---|---|---|"]
        for b in report.blocked:
            target = f"{b.target} ({b.label})" if b.label else b.target
            lines.append(f"| {b.action} | {_cell(target)} | {b.rule} | {_cell(b.reason)} |")
    else:
        lines.append("None.")

    lines += ["", "## Errors", ""]
    if report.errors:
        lines += [f"- {e.action} {e.target}: {e.reason}" for e in report.errors]
    else:
        lines.append("None.")
    return "\n".join(lines) + "\n"


_HTML_STYLE = """
body { font-family: -apple-system, 'Segoe UI', Roboto, sans-serif; color: #333; max-width: 1200px;
       margin: 0 auto; padding: 20px; background: #f5f5f5; }
.header { background: #5a67d8; color: white; padding: 24px; border-radius: 8px; }
.header a { color: white; }
.stats { display: grid; grid-template-columns: repeat(auto-fit, minmax(150px, 1fr)); gap: 16px; margin: 24px 0; }
.stat { background: white; padding: 16px; border-radius: 8px; text-align: center; }
.stat b { display: block; font-size: 2em; color: #5a67d8; }
.section { background: white; margin: 20px 0; padding: 20px; border-radius: 8px; }
table { width: 100%; border-collapse: collapse; }
th, td { padding: 8px; text-align: left; border-bottom: 1px solid #ddd; }
.url { word-break: break-all; }
.gallery { display: grid; grid-template-columns: repeat(auto-fill, minmax(280px, 1fr)); gap: 16px; }
.shot { border: 1px solid #ddd; border-radius: 8px; overflow: hidden; }
.shot img { width: 100%; height: 180px; object-fit: cover; }
.shot p { margin: 0; padding: 8px; background: #f8f9fa; }
"""


def render_html(report: CrawlReport) -> str:
    """Standalone HTML page; screenshots are referenced relative to the report directory."""
    e = html.escape
    s = report.stats
    out = [
        "<!DOCTYPE html>",
        '<html lang="en">',
        "<head>",
        '<meta charset="UTF-8">',
        f"<title>Crawl report {e(report.session_id)}</title>",
        f"<style>{_HTML_STYLE}</style>",
        "</head>",
        "<body>",
        '<div class="header">',
        "<h1>Crawl report</h1>",
        f"<p><strong>Session:</strong> {e(report.session_id)}</p>",
        f'<p><strong>Start URL:</strong> <a href="{e(report.start_url)}">{e(report.start_url)}</a></p>',
        f"<p><strong>Goal:</strong> {e(report.goal or 'Autonomous exploration')}</p>",
        f"<p><strong>Status:</strong> {e(report.status)}"
        + (f" ({e(report.termination_reason)})" if report.termination_reason else "") + "</p>",
        f"<p><strong>Duration:</strong> {s.duration_seconds:.1f}s "
        f"({_iso(report.started_at) or '-'} to {_iso(report.ended_at) or '-'})</p>",
        "</div>",
        '<div class="stats">',
    ]
    for label, value in (
        ("Pages visited", s.pages_visited),
        ("Total links", s.total_links),
        ("Max depth", s.max_depth),
        ("Screenshots", s.screenshots),
        ("Blocked", s.actions_blocked),
        ("Errors", s.errors),
    ):
        out.append(f'<div class="stat"><b>{value}</b>{label}</div>')
    out.append("</div>")

    out += ['<div class="section">', "<h2>Pages</h2>"]
    if report.pages:
        out.append("<table><thead><tr><th>#</th><th>Depth</th><th>Title</th><th>URL</th>"
                   "<th>Links</th><th>Screenshot</th></tr></thead><tbody>")
        for i, page in enumerate(report.pages, start=1):
            out.append(
                f"<tr><td>{i}</td><td>{page.depth}</td><td>{e(page.title or 'Untitled')}</td>"
                f'<td><a class="url" href="{e(page.url)}">{e(page.url)}</a></td>'
                f"<td>{page.links}</td><td>{'yes' if page.screenshot_path else 'no'}</td></tr>"
            )
        out.append("</tbody></table>")
    else:
        out.append("<p>No pages recorded.</p>")
    out.append("</div>")

    out += ['<div class="section">', "<h2>Blocked actions</h2>"]
    if report.blocked:
        out.append("<table><thead><tr><th>Action</th><th>Target</th><th>Rule</th><th>Reason</th></tr></thead><tbody>")
        for b in report.blocked:
            target = f"{b.target} ({b.label})" if b.label else b.target
            out.append(f"<tr><td>{e(b.action)}</td><td>{e(target)}</td><td>{e(b.rule)}</td><td>{e(b.reason)}</td></tr>")
        out.append("</tbody></table>")
    else:
        out.append("<p>None.</p>")
    out.append("</div>")

    out += ['<div class="section">', "<h2>Errors</h2>"]
    if report.errors:
        out.append("<table><thead><tr><th>Action</th><th>Target</th><th>Reason</th></tr></thead><tbody>")
        for err in report.errors:
            out.append(f"<tr><td>{e(err.action)}</td><td>{e(err.target)}</td><td>{e(err.reason)}</td></tr>")
        out.append("</tbody></table>")
    else:
        out.append("<p>No errors.</p>")
    out.append("</div>")

    out += ['<div class="section">', "<h2>Screenshots</h2>"]
    shots = [p for p in report.pages if p.screenshot_path]
    if shots:
        out.append('<div class="gallery">')
        for page in shots:
            src = "screenshots/" + os.path.basename(page.screenshot_path)
            out.append(
                f'<div class="shot"><img src="{e(src)}" alt="{e(page.title or page.url)}">'
                f"<p>{e(page.title or 'Untitled')}<br><small>{e(page.url)}</small></p></div>"
            )
        out.append("</div>")
    else:
        out.append("<p>No screenshots captured.</p>")
    out += ["</div>", "</body>", "</html>"]
    return "\n".join(out) + "\n"


def render_graphml(report: CrawlReport) -> str:
    g = nx.DiGraph()
    for page in report.pages:
        g.add_node(page.fingerprint, url=page.url, title=page.title, depth=page.depth)
    for u, v, via in report.edges:
        g.add_edge(u, v, via=via)
    return "\n".join(nx.generate_graphml(g)) + "\n"


def _cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")
