from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List

from flask import Flask
from reactpy import component, hooks, html
from reactpy.backend.flask import use_request

from . import auth, db, services
from .scheduling import ProgramWorklist

_logger = logging.getLogger(__name__)

DASHBOARD_CSS = """
:root { color-scheme: light; font-family: system-ui, sans-serif; }
body { margin: 0; background: #f3f5f8; color: #1c2430; }
.navbar { display: flex; justify-content: space-between; align-items: center; padding: 14px 24px; background: #fff; border-bottom: 1px solid #e1e5eb; }
.nav-title { font-weight: 600; font-size: 18px; }
.page { max-width: 1180px; margin: 0 auto; padding: 24px; display: grid; gap: 18px; }
.card { background: #fff; border: 1px solid #e1e5eb; border-radius: 12px; padding: 18px; }
.section-head { display: flex; justify-content: space-between; align-items: center; gap: 12px; margin-bottom: 12px; }
.meta { color: #5b6676; font-size: 13px; }
.btn { border: 1px solid #c9d1dc; background: #fff; border-radius: 8px; padding: 6px 12px; cursor: pointer; }
.btn.primary { background: #1f6feb; border-color: #1f6feb; color: #fff; }
.btn.active { border-color: #1f6feb; color: #1f6feb; }
.btn[disabled] { opacity: 0.55; cursor: default; }
.pill { display: inline-block; border-radius: 999px; padding: 2px 10px; font-size: 12px; background: #eef1f5; }
.pill-info { background: #e3eefe; color: #174ea6; }
.pill-warning { background: #fff4d6; color: #8a5a00; }
.pill-danger { background: #fde2e1; color: #a50e0e; }
table { width: 100%; border-collapse: collapse; font-size: 14px; }
th, td { text-align: left; padding: 6px 8px; border-bottom: 1px solid #eef1f5; }
.options { display: flex; flex-wrap: wrap; gap: 6px; margin-bottom: 10px; }
.modal-backdrop { position: fixed; inset: 0; background: rgba(20, 26, 36, 0.45); display: flex; align-items: flex-start; justify-content: center; padding: 40px 16px; overflow: auto; }
.modal { width: min(1100px, 100%); }
.notice { border-radius: 10px; padding: 10px 14px; }
.notice-error { background: #fde2e1; }
.notice-warning { background: #fff4d6; }
.notice-info { background: #e3eefe; }
input, select { border: 1px solid #c9d1dc; border-radius: 8px; padding: 5px 8px; }
"""


def format_hour(value: Any) -> str:
    if isinstance(value, datetime):
        return value.strftime("%H:%M")
    return str(value or "")


def session_user(flask_app: Flask, request: Any) -> Dict[str, Any] | None:
    session = flask_app.session_interface.open_session(flask_app, request)
    user_id = session.get("user_id") if session is not None else None
    if user_id is None:
        return None
    with db.connection():
        return services.get_user(user_id)


def make_app_component(flask_app: Flask) -> Callable[[], Any]:
    """Build the dashboard root bound to ``flask_app``.

    ReactPy renders outside Flask's request cycle, so every service call
    made from the view runs inside its own pooled connection. Live changes
    may arrive on another thread; re-renders are handed back to the render
    loop.
    """

    def load_user_safe(request: Any) -> Dict[str, Any] | None:
        try:
            return session_user(flask_app, request)
        except Exception:
            _logger.exception("Failed to load the signed-in user")
            return None

    @component
    def App():
        request = use_request()
        user, set_user = hooks.use_state(lambda: load_user_safe(request))
        _, set_version = hooks.use_state(0)
        notice, set_notice = hooks.use_state(None)
        is_busy, set_is_busy = hooks.use_state(False)
        busy_ref = hooks.use_ref(False)
        worklist_ref = hooks.use_ref(None)
        loop_ref = hooks.use_ref(None)

        if loop_ref.current is None:
            loop_ref.current = asyncio.get_running_loop()

        def bump_version() -> None:
            loop_ref.current.call_soon_threadsafe(set_version, lambda version: version + 1)

        if worklist_ref.current is None:
            worklist_ref.current = ProgramWorklist(on_change=bump_version)
        worklist: ProgramWorklist = worklist_ref.current

        def run(action: Callable[[], Any], error_title: str = "Oops, something went wrong ...") -> Any:
            if busy_ref.current:
                return None
            busy_ref.current = True
            set_is_busy(True)
            try:
                with db.connection():
                    return action()
            except Exception as exc:
                _logger.exception("Dashboard action failed")
                set_notice({"level": "error", "title": error_title, "message": str(exc)})
                return None
            finally:
                busy_ref.current = False
                set_is_busy(False)

        @hooks.use_effect(dependencies=[user.get("id") if user else None])
        def follow_programs():
            if auth.can_enter(user):
                run(worklist.start, "Programs could not be loaded")
            return worklist.teardown

        def shift_day(days: int) -> None:
            run(lambda: worklist.change_day(worklist.day + timedelta(days=days)))

        def pick_day(event: Dict[str, Any]) -> None:
            value = (event.get("target") or {}).get("value")
            if value:
                run(lambda: worklist.change_day(value))

        def open_modal() -> None:
            set_notice(None)
            run(lambda: worklist.open(user))

        def commit() -> None:
            result = run(worklist.commit)
            if result is None:
                return
            if result.failed:
                set_notice(
                    {
                        "level": "warning",
                        "title": f"{result.programmed} programmed, {len(result.failed)} failed",
                        "message": "The failed rows stay in the list.",
                    }
                )
            else:
                set_notice({"level": "info", "title": "Done!", "message": f"{result.programmed} programs created."})

        def retry() -> None:
            set_notice(None)
            run(lambda: worklist.search_programs(reset=True), "Programs are unavailable")

        def refresh_user() -> None:
            set_user(load_user_safe(request))

        def render_notice():
            if not notice:
                return html.div()
            return html.div(
                {"class": f"notice notice-{notice['level']}"},
                html.strong(notice["title"]),
                html.span(f" {notice['message']}") if notice.get("message") else "",
                html.button({"class": "btn", "on_click": lambda e: retry()}, "Retry") if notice["level"] == "error" else "",
                html.button({"class": "btn", "on_click": lambda e: set_notice(None)}, "Dismiss"),
            )

        def render_programs():
            rows = worklist.visible_programs()
            return html.section(
                {"class": "card"},
                html.div(
                    {"class": "section-head"},
                    html.div(
                        html.h2(f"Programs {worklist.programmed_label}"),
                        html.div({"class": "meta"}, worklist.day.strftime("%A %d %B %Y")),
                    ),
                    html.div(
                        html.button({"class": "btn", "disabled": is_busy, "on_click": lambda e: shift_day(-1)}, "Previous"),
                        html.input(
                            {
                                "type": "date",
                                "value": worklist.day.strftime("%Y-%m-%d"),
                                "disabled": is_busy,
                                "on_change": pick_day,
                            }
                        ),
                        html.button({"class": "btn", "disabled": is_busy, "on_click": lambda e: shift_day(1)}, "Next"),
                        html.button(
                            {"class": "btn primary", "disabled": is_busy or not user.get("vendor_id"), "on_click": lambda e: open_modal()},
                            "Assignments to program",
                        ),
                    ),
                ),
                html.input(
                    {
                        "placeholder": "Filter programs",
                        "value": worklist.programs_filter,
                        "on_change": lambda e: set_filter("programs_filter", e),
                    }
                ),
                html.table(
                    html.thead(
                        html.tr(
                            html.th("Customer"),
                            html.th("Route"),
                            html.th("Driver"),
                            html.th("Vehicle"),
                            html.th("Begins"),
                            html.th("Program / Round"),
                            html.th("Type"),
                        )
                    ),
                    html.tbody(
                        *[
                            html.tr(
                                {"key": row.get("id", idx)},
                                html.td(row.get("customer_name") or ""),
                                html.td(row.get("route_name") or ""),
                                html.td(row.get("driver_name") or ""),
                                html.td(row.get("vehicle_name") or ""),
                                html.td(format_hour(row.get("time")) or row.get("begin_hour") or ""),
                                html.td(f"{row.get('round') or ''} / {row.get('program') or ''}"),
                                html.td(row.get("type") or ""),
                            )
                            for idx, row in enumerate(rows)
                        ]
                    ),
                )
                if rows
                else html.div({"class": "meta"}, "Nothing programmed for this day."),
            )

        def set_filter(name: str, event: Dict[str, Any]) -> None:
            setattr(worklist, name, (event.get("target") or {}).get("value", ""))
            set_version(lambda version: version + 1)

        def render_options(items: List[Dict[str, Any]], label_key: str, active: str, on_pick: Callable[[Dict[str, Any]], None]):
            return html.div(
                {"class": "options"},
                *[
                    html.button(
                        {
                            "key": f"{label_key}-{idx}",
                            "class": f"btn {'active' if item.get(label_key) == active else ''}",
                            "disabled": is_busy,
                            "on_click": lambda e, item=item: on_pick(item),
                        },
                        item.get(label_key) or "",
                    )
                    for idx, item in enumerate(items)
                ]
                if items
                else [html.span({"class": "meta"}, "No options.")],
            )

        def render_select(row: Dict[str, Any], field_name: str, options: List[str]):
            def on_change(event: Dict[str, Any]) -> None:
                value = (event.get("target") or {}).get("value")
                kwargs = {field_name: value}
                run(lambda: worklist.edit_row(row.get("assignment_id"), **kwargs))

            current = row.get(field_name) or ""
            choices = options if current in options or not current else [current, *options]
            return html.select(
                {"value": current, "disabled": is_busy, "on_change": on_change},
                *[html.option({"key": choice, "value": choice}, choice) for choice in choices],
            )

        def render_modal():
            if not worklist.is_open:
                return html.div()
            rows = worklist.visible_rows()
            return html.div(
                {"class": "modal-backdrop"},
                html.section(
                    {"class": "card modal"},
                    html.div(
                        {"class": "section-head"},
                        html.div(
                            html.h2(f"Assignments to program {worklist.assignments_label}"),
                            html.div({"class": "meta"}, worklist.route_path or "Pick a customer and a route."),
                        ),
                        html.span({"class": "pill pill-info"}, f"Selected {worklist.selected_label}"),
                    ),
                    html.div({"class": "meta"}, "Customers"),
                    render_options(
                        worklist.customers,
                        "customer_name",
                        worklist.customer_path,
                        lambda item: run(lambda: worklist.select_customer(item)),
                    ),
                    html.div({"class": "meta"}, "Routes"),
                    render_options(
                        worklist.routes,
                        "route_name",
                        worklist.route_name_selected,
                        lambda item: run(lambda: worklist.select_route(item)),
                    ),
                    html.div(
                        {"class": "options"},
                        html.button(
                            {
                                "class": "btn",
                                "disabled": is_busy or not worklist.route_name_selected,
                                "on_click": lambda e: run(worklist.search),
                            },
                            "Search",
                        ),
                        html.input(
                            {
                                "placeholder": "Filter rows",
                                "value": worklist.rows_filter,
                                "on_change": lambda e: set_filter("rows_filter", e),
                            }
                        ),
                    ),
                    *([html.div({"class": "pill pill-warning"}, worklist.found_message)] if worklist.found_message else []),
                    html.table(
                        html.thead(
                            html.tr(
                                html.th(""),
                                html.th("Customer"),
                                html.th("Route"),
                                html.th("Driver"),
                                html.th("Vehicle"),
                                html.th("Begins"),
                                html.th("Program / Round"),
                                html.th("Type"),
                            )
                        ),
                        html.tbody(
                            *[
                                html.tr(
                                    {"key": str(row.get("assignment_id"))},
                                    html.td(
                                        html.input(
                                            {
                                                "type": "checkbox",
                                                "checked": str(row.get("assignment_id")) in worklist.selected,
                                                "disabled": is_busy,
                                                "on_change": lambda e, row=row: worklist.toggle(row.get("assignment_id")),
                                            }
                                        )
                                    ),
                                    html.td(row.get("customer_name") or ""),
                                    html.td(row.get("route_name") or ""),
                                    html.td(render_select(row, "driver_name", worklist.driver_names)),
                                    html.td(render_select(row, "vehicle_name", worklist.vehicle_names)),
                                    html.td(format_hour(row.get("time")) or row.get("begin_hour") or ""),
                                    html.td(f"{row.get('round') or ''} / {row.get('program') or ''}"),
                                    html.td(row.get("type") or ""),
                                )
                                for row in rows
                            ]
                        ),
                    )
                    if rows
                    else html.div(),
                    html.div(
                        {"class": "options"},
                        html.button(
                            {
                                "class": "btn primary",
                                "disabled": is_busy or not worklist.selected,
                                "on_click": lambda e: commit(),
                            },
                            "Program",
                        ),
                        html.button({"class": "btn", "disabled": is_busy, "on_click": lambda e: run(worklist.cancel)}, "Cancel"),
                    ),
                ),
            )

        if user is None or not auth.can_enter(user):
            return html.div(
                html.style(DASHBOARD_CSS),
                html.main(
                    {"class": "page"},
                    html.section(
                        {"class": "card"},
                        html.h1("Sign in required"),
                        html.div(
                            {"class": "meta"},
                            "Sign in with an admin, vendor or sales account through /api/auth/sign-in, then reload.",
                        ),
                        html.button({"class": "btn primary", "on_click": lambda e: refresh_user()}, "Retry"),
                    ),
                ),
            )

        return html.div(
            {"id": "routedesk-root"},
            html.style(DASHBOARD_CSS),
            html.header(
                {"class": "navbar"},
                html.div(
                    html.div({"class": "nav-title"}, "Routedesk"),
                    html.div({"class": "meta"}, "Day programs"),
                ),
                html.div(
                    html.span({"class": "pill"}, user.get("display_name") or user.get("email") or ""),
                    html.span({"class": "pill pill-info"}, auth.primary_role(user) or ""),
                    html.span({"class": "meta"}, " Sign out with POST /api/auth/sign-out "),
                    *([html.span({"class": "pill pill-warning"}, "Syncing...")] if is_busy or worklist.loading else []),
                ),
            ),
            html.main(
                {"class": "page"},
                render_notice(),
                render_programs(),
            ),
            render_modal(),
        )

    return App
