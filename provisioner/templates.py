"""Plain string templates for the files written into a new worker project."""

from __future__ import annotations

import datetime as _dt
import json
from typing import Optional

ENTRYPOINT = "index.js"
DEPLOY_CONFIG = "wrangler.toml"
MANIFEST = "package.json"
LOCKFILE = "package-lock.json"
GITIGNORE = ".gitignore"


def render_manifest(project_name: str) -> str:
    manifest = {
        "name": project_name,
        "version": "1.0.0",
        "private": True,
        "type": "module",
        "main": ENTRYPOINT,
        "scripts": {
            "dev": "wrangler dev",
            "deploy": "wrangler deploy",
        },
        "dependencies": {},
    }
    return json.dumps(manifest, indent=2) + "\n"


def render_entrypoint(project_name: str) -> str:
    return f"""import {{ Hono }} from 'hono';

const app = new Hono();

app.get('/', (c) => c.text('Hello from {project_name}!'));

app.get('/robots.txt', (c) => {{
  const robotsTxt = `User-agent: *
Disallow: /`;
  return c.text(robotsTxt, 200, {{
    'Content-Type': 'text/plain',
  }});
}});

export default app;
"""


def render_deploy_config(
    project_name: str,
    account_id: str,
    compatibility_date: Optional[_dt.date] = None,
) -> str:
    day = (compatibility_date or _dt.date.today()).isoformat()
    return (
        f'name = "{project_name}"\n'
        f'main = "{ENTRYPOINT}"\n'
        f'compatibility_date = "{day}"\n'
        f'account_id = "{account_id}"\n'
        "workers_dev = true\n"
    )


def render_gitignore() -> str:
    return "node_modules/\n.wrangler/\n.dev.vars\n"
