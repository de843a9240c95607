# curses_view.py
"""
Curses-based console for the survey client.  The "table" mode shows the live
reading, the two points and the survey areas; the "log" mode shows the
in-memory log buffer.  The view owns the curses window and never touches the
survey components: key presses become ``on_command(name, *args)`` calls and
the controller pushes back a dashboard dict plus notices.
"""

import curses
from typing import Any, Callable, Dict, List, Optional

from app_logger import log_buffer   # shared in-memory log deque
from formatting import format_coordinate, format_value, label_for
from models import POINT_NUMBERS, Notice, Severity
from settings import APP_NAME, APP_VERSION

LIVE_KEYS = ("elevation", "distance", "azimuth", "lat", "lon", "altitude")

KEY_HELP = (
    "c scan  d disconnect  x cancel  v strongest  p point  s capture  i photo  "
    "n new area  f finish  a save as area  u submit  U submit points  r delete  "
    "C clear  o online?  l/t log/table"
)


class CursesView:
    """
    Parameters
    ----------
    stdscr : curses.window
        Window supplied by ``curses.wrapper``; all drawing happens inside it.
    """

    AREA_HEADER = ["name", "observer", "points", "photos", "status"]

    def __init__(self, stdscr: "curses.window") -> None:
        self.stdscr = stdscr
        self.on_command: Callable[..., None] = lambda name, *args: None
        self.mode: str = "table"          # start in survey table view
        self.log_scroll: int = 0          # index of the first visible log line
        self.selected_area: int = 0
        self._dashboard: Dict[str, Any] = {}
        self._notice: Optional[Notice] = None
        self._question: Optional[str] = None
        self._on_yes: Optional[Callable[[], None]] = None
        self._running = True
        self._needs_redraw = True         # force first draw
        self._init_curses()

    # ------------------------------------------------------------------
    # Curses initialisation (colors, etc.)
    # ------------------------------------------------------------------
    def _init_curses(self) -> None:
        curses.curs_set(0)                     # hide cursor
        self.stdscr.nodelay(True)             # non-blocking getch()
        curses.start_color()
        curses.use_default_colors()
        curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)
        curses.init_pair(2, curses.COLOR_GREEN, -1)
        curses.init_pair(3, curses.COLOR_YELLOW, -1)
        curses.init_pair(4, curses.COLOR_RED, -1)
        self.header_attr = curses.color_pair(1) | curses.A_BOLD
        self.severity_attr = {
            Severity.INFO: curses.A_NORMAL,
            Severity.SUCCESS: curses.color_pair(2),
            Severity.WARNING: curses.color_pair(3),
            Severity.ERROR: curses.color_pair(4) | curses.A_BOLD,
        }

    # ------------------------------------------------------------------
    # Public API – called by the controller
    # ------------------------------------------------------------------
    def update_dashboard(self, dashboard: Dict[str, Any]) -> None:
        self._dashboard = dashboard
        self._needs_redraw = True

    def show_notice(self, notice: Notice) -> None:
        self._notice = notice
        self._needs_redraw = True

    def ask(self, question: str, on_yes: Callable[[], None]) -> None:
        """Show a y/n question in the footer; ``on_yes`` runs on 'y'."""
        self._question = question
        self._on_yes = on_yes
        self._needs_redraw = True

    def stop(self) -> None:
        self._running = False

    def run(self) -> None:
        """Poll keys and redraw only when needed."""
        while self._running:
            self._handle_key()            # non-blocking, cheap
            if self._needs_redraw:
                self._render()
                self._needs_redraw = False
            curses.napms(10)

    # ------------------------------------------------------------------
    # Key handling
    # ------------------------------------------------------------------
    def _areas(self) -> List[Any]:
        return self._dashboard.get("areas", [])

    def _selected_area_id(self) -> Optional[str]:
        areas = self._areas()
        if not areas:
            return None
        self.selected_area = min(self.selected_area, len(areas) - 1)
        return areas[self.selected_area].id

    def _prompt(self, question: str) -> str:
        """Blocking line input on the footer line."""
        max_y, max_x = self.stdscr.getmaxyx()
        self.stdscr.nodelay(False)
        curses.echo()
        curses.curs_set(1)
        try:
            self.stdscr.move(max_y - 1, 0)
            self.stdscr.clrtoeol()
            self.stdscr.addstr(max_y - 1, 0, question[: max_x - 1], curses.A_REVERSE)
            self.stdscr.refresh()
            raw = self.stdscr.getstr(max_y - 1, min(len(question) + 1, max_x - 1), 200)
        finally:
            curses.noecho()
            curses.curs_set(0)
            self.stdscr.nodelay(True)
        self._needs_redraw = True
        return raw.decode("utf-8", errors="replace").strip()

    def _handle_key(self) -> None:
        ch = self.stdscr.getch()
        if ch == -1:
            return  # no key pressed
        self._needs_redraw = True

        if self._question is not None:
            if ch in (ord("y"), ord("Y")):
                on_yes = self._on_yes
                self._question, self._on_yes = None, None
                if on_yes is not None:
                    on_yes()
            elif ch in (ord("n"), ord("N"), 27):
                self._question, self._on_yes = None, None
            return

        if ch in (ord("l"), ord("L")):
            self.mode = "log"
            self.log_scroll = 0
        elif ch in (ord("t"), ord("T")):
            self.mode = "table"
        elif self.mode == "log":
            self._scroll_log(ch)
        else:
            self._survey_key(ch)

    def _scroll_log(self, ch: int) -> None:
        max_y, _ = self.stdscr.getmaxyx()
        visible_lines = max_y - 2      # leave room for footer
        last = max(0, len(log_buffer) - visible_lines)
        if ch in (curses.KEY_DOWN, ord("j")):
            self.log_scroll = min(self.log_scroll + 1, last)
        elif ch in (curses.KEY_UP, ord("k")):
            self.log_scroll = max(self.log_scroll - 1, 0)
        elif ch == curses.KEY_NPAGE:
            self.log_scroll = min(self.log_scroll + visible_lines, last)
        elif ch == curses.KEY_PPAGE:
            self.log_scroll = max(self.log_scroll - visible_lines, 0)

    def _survey_key(self, ch: int) -> None:
        key = chr(ch) if 0 <= ch < 256 else ""
        if ch in (curses.KEY_DOWN, ord("j")):
            self.selected_area = min(self.selected_area + 1, max(0, len(self._areas()) - 1))
        elif ch in (curses.KEY_UP, ord("k")):
            self.selected_area = max(self.selected_area - 1, 0)
        elif key == "c":
            self.on_command("connect")
        elif key == "d":
            self.on_command("disconnect")
        elif key == "x":
            self.on_command("cancel_scan")
        elif key == "v":
            self.on_command("connect_strongest")
        elif key in ("p", " "):
            self.on_command("toggle_point")
        elif key in ("s", "\n"):
            self.on_command("capture")
        elif key == "i":
            point = self._dashboard.get("current_point", 1)
            path = self._prompt(f"Photo file for point {point}:")
            if path:
                self.on_command("attach_image", point, path)
        elif key in ("n", "a"):
            name = self._prompt("Area name (empty for default):")
            observer = self._prompt("Observer (empty for default):")
            self.on_command("create_area" if key == "n" else "save_points_as_area", name, observer)
        elif key == "f":
            self.on_command("finish_survey")
        elif key == "u":
            area_id = self._selected_area_id()
            if area_id:
                self.on_command("submit_area", area_id)
        elif key == "U":
            self.ask(
                "Submit the two points now? Captured points are cleared afterwards",
                lambda: self.on_command("submit_loose", True),
            )
        elif key == "r":
            area_id = self._selected_area_id()
            if area_id:
                self.ask("Delete the selected area?", lambda: self.on_command("delete_area", area_id))
        elif key == "C":
            self.ask("Delete ALL survey areas?", lambda: self.on_command("clear_areas"))
        elif key == "o":
            self.on_command("check_internet")

    # ------------------------------------------------------------------
    # Rendering helpers
    # ------------------------------------------------------------------
    def _render(self) -> None:
        self.stdscr.erase()
        if self.mode == "table":
            self._draw_table()
        else:
            self._draw_log()
        self._draw_footer()
        self.stdscr.refresh()

    def _put(self, y: int, x: int, text: str, attr: int = curses.A_NORMAL) -> None:
        max_y, max_x = self.stdscr.getmaxyx()
        if 0 <= y < max_y - 2 and x < max_x - 1:
            self.stdscr.addstr(y, x, text[: max_x - 1 - x], attr)

    # ------------------------------------------------------------------
    # Table view
    # ------------------------------------------------------------------
    def _draw_table(self) -> None:
        _, max_x = self.stdscr.getmaxyx()
        d = self._dashboard
        online = d.get("online")
        net = "online" if online else ("offline" if online is False else "?")
        title = f" {APP_NAME} {APP_VERSION} | BLE: {d.get('ble_state', 'idle')}"
        if d.get("device"):
            title += f" {d['device']}"
        if d.get("binding") == "degraded":
            title += " (fallback)"
        title += f" | net: {net}"
        self._put(0, 0, title.ljust(max_x - 1), self.header_attr)

        # live reading
        live = d.get("live", {})
        row = 2
        self._put(row, 0, "LIVE", curses.A_BOLD)
        col = 6
        for key in LIVE_KEYS:
            cell = f"{label_for(key)}: {format_value(key, live.get(key))}"
            self._put(row, col, cell)
            col += len(cell) + 3
        fix = d.get("fix")
        if d.get("gps_denied"):
            gps = "GPS permission denied"
        elif fix is not None:
            gps = (f"GPS {format_coordinate(fix.latitude)}, {format_coordinate(fix.longitude)}"
                   f" ±{format_value('alt', fix.accuracy)}")
        else:
            gps = "GPS waiting for fix"
        self._put(row + 1, 6, f"{gps} | heading {d.get('heading', 0.0):.1f}° {d.get('direction', 'N')}")

        # points
        row += 3
        active = d.get("active_area")
        mode = f'survey "{active.name}"' if active else "loose points"
        self._put(row, 0, f"POINTS ({mode}) current: {d.get('current_point', 1)}", curses.A_BOLD)
        points = active.points if active else {f"point{n}": d.get("loose_points", {}).get(n) for n in POINT_NUMBERS}
        images = active.images if active else {f"point{n}": d.get("loose_images", {}).get(n) for n in POINT_NUMBERS}
        for n in POINT_NUMBERS:
            slot = f"point{n}"
            point = points.get(slot)
            if point is None:
                text = f"{n}: --"
            else:
                text = (
                    f"{n}: {format_value('distance', point.distance)}  "
                    f"{format_value('elevation', point.elevation)}  az {point.azimuth}°  "
                    f"{format_coordinate(point.lat)}, {format_coordinate(point.lon)}"
                )
            if images.get(slot) is not None:
                text += "  [photo]"
            self._put(row + n, 2, text)

        # areas
        row += 4
        self._put(row, 0, "AREAS", curses.A_BOLD)
        widths = [20, 14, 7, 7, 12]
        x = 0
        for title, w in zip(self.AREA_HEADER, widths):
            self._put(row + 1, x, title.ljust(w), self.header_attr)
            x += w + 1
        for idx, area in enumerate(self._areas()):
            if area.is_active:
                status = "active"
            elif area.is_submitted:
                status = "submitted"
            elif area.is_complete:
                status = "ready"
            else:
                status = "incomplete"
            cells = [
                area.name,
                area.observer,
                f"{area.point_count}/2",
                f"{sum(1 for i in area.images.values() if i is not None)}/2",
                status,
            ]
            attr = curses.A_REVERSE if idx == self.selected_area else curses.A_NORMAL
            x = 0
            for cell, w in zip(cells, widths):
                self._put(row + 2 + idx, x, str(cell)[:w].ljust(w), attr)
                x += w + 1

    # ------------------------------------------------------------------
    # Log view – scrollable list of the most recent log lines
    # ------------------------------------------------------------------
    def _draw_log(self) -> None:
        max_y, max_x = self.stdscr.getmaxyx()
        visible_lines = max_y - 2               # reserve the last lines for the footer
        logs = list(log_buffer)
        for idx, line in enumerate(logs[self.log_scroll: self.log_scroll + visible_lines]):
            self.stdscr.addstr(idx, 0, line[: max_x - 1])

    # ------------------------------------------------------------------
    # Footer – notice / question plus key help
    # ------------------------------------------------------------------
    def _draw_footer(self) -> None:
        max_y, max_x = self.stdscr.getmaxyx()
        if self._question is not None:
            self.stdscr.addstr(max_y - 2, 0, f"{self._question} (y/n)"[: max_x - 1], curses.A_BOLD)
        elif self._notice is not None:
            text = f"{self._notice.title}: {self._notice.message}"
            self.stdscr.addstr(max_y - 2, 0, text[: max_x - 1], self.severity_attr[self._notice.severity])
        mode_msg = f"[{'TABLE' if self.mode == 'table' else 'LOG'} MODE] "
        hint = KEY_HELP if self.mode == "table" else "'t' for table, arrows to scroll, Ctrl-C to quit"
        self.stdscr.addstr(max_y - 1, 0, (mode_msg + hint)[: max_x - 1], curses.A_REVERSE)
