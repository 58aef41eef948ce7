"""Read-only annotation viewer for a single project file.

Usage: python -m agent_farm.annotate --port 4250 --file PATH
"""

from __future__ import annotations

import argparse
import html
import logging
import sys
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.responses import HTMLResponse

from .auth import install_guards

logger = logging.getLogger(__name__)

_PAGE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{title}</title>
<style>
body {{ margin: 0; font: 13px/1.5 Menlo, Consolas, monospace; background: #1e1e1e; color: #d4d4d4; }}
header {{ padding: 6px 12px; background: #333; }}
table {{ border-collapse: collapse; }}
td.n {{ color: #858585; text-align: right; padding: 0 12px; user-select: none; }}
td.l {{ white-space: pre; }}
tr:target {{ background: #264f78; }}
</style>
</head>
<body>
<header>{title}</header>
<table>{rows}</table>
</body>
</html>
"""


def render_file(path: Path) -> str:
    lines = path.read_text(errors="replace").splitlines()
    rows = "".join(
        f'<tr id="L{n}"><td class="n">{n}</td><td class="l">{html.escape(text)}</td></tr>'
        for n, text in enumerate(lines, start=1)
    )
    return _PAGE.format(title=html.escape(str(path)), rows=rows)


def create_annotate_app(path: Path) -> FastAPI:
    app = FastAPI(title="Agent Farm Annotation Viewer", version="0.1.0")
    install_guards(app)

    @app.get("/", response_class=HTMLResponse)
    async def view() -> HTMLResponse:
        return HTMLResponse(render_file(path))

    @app.get("/api/file")
    async def file_content() -> dict:
        return {"path": str(path), "content": path.read_text(errors="replace")}

    return app


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")
    parser = argparse.ArgumentParser(description="Agent Farm annotation viewer")
    parser.add_argument("--port", type=int, required=True)
    parser.add_argument("--file", type=Path, required=True)
    args = parser.parse_args(argv)

    if not args.file.is_file():
        logger.error("File not found: %s", args.file)
        return 1

    uvicorn.run(create_annotate_app(args.file.resolve()), host="127.0.0.1", port=args.port, log_level="warning")
    return 0


if __name__ == "__main__":
    sys.exit(main())
