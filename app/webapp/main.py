#!/usr/bin/env python3
"""
Linkarr Web Application v1.0.0
Provides a web UI for running hard link audits, viewing reports, and configuring settings.

Features:
- One audit job at a time, output streamed into a live log
- Past runs grouped by timestamp with problem counts
- Sonarr/Radarr settings with test connections
"""

import logging
import os
import re
import secrets
import subprocess
import sys
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Any

from fastapi import FastAPI, HTTPException, Depends, Query, Body
from fastapi.responses import HTMLResponse, PlainTextResponse, FileResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials
from pydantic import BaseModel
import uvicorn

sys.path.insert(0, str(Path(__file__).parent.parent))
from report import group_runs, read_text
from settings_manager import DEFAULT_SETTINGS, get_settings_manager

VERSION = "1.0.0"

logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
LOG = logging.getLogger("linkarr.webapp")

CONFIG_DIR = os.environ.get("CONFIG_DIR", "/config")
settings = get_settings_manager(CONFIG_DIR)

LINKARR_SCRIPT = Path(__file__).parent.parent / "linkarr.py"
RUN_ID_RE = re.compile(r"^\d{8}_\d{6}$")
ARTIFACTS = {
    "problems": ("problems_{}.txt", "text/plain"),
    "suggestions": ("suggestions_{}.txt", "text/plain"),
    "json": ("report_{}.json", "application/json"),
}


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    id: str
    status: JobStatus
    mode: str = "all"
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    report_run: Optional[str] = None
    problems_found: Optional[bool] = None
    error: Optional[str] = None
    logs: List[str] = field(default_factory=list)
    progress: int = 0

    def to_dict(self) -> Dict:
        return {
            "id": self.id, "status": self.status.value, "mode": self.mode,
            "started_at": self.started_at, "completed_at": self.completed_at,
            "report_run": self.report_run, "problems_found": self.problems_found,
            "error": self.error, "progress": self.progress, "log_count": len(self.logs),
        }


class JobManager:
    def __init__(self):
        self._jobs: Dict[str, Job] = {}
        self._lock = threading.Lock()
        self._current_job: Optional[str] = None

    def create_job(self, mode: str = "all") -> Job:
        with self._lock:
            job_id = str(uuid.uuid4())[:8]
            job = Job(id=job_id, status=JobStatus.QUEUED, mode=mode)
            self._jobs[job_id] = job
            return job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self._jobs.get(job_id)

    def list_jobs(self, limit: int = 20) -> List[Job]:
        with self._lock:
            jobs = sorted(self._jobs.values(), key=lambda j: j.started_at or "", reverse=True)
            return jobs[:limit]

    def is_running(self) -> bool:
        return self._current_job is not None

    def start_job(self, job: Job, script_path: str) -> bool:
        with self._lock:
            if self._current_job is not None:
                return False
            self._current_job = job.id
            job.status = JobStatus.RUNNING
            job.started_at = datetime.now().isoformat()

        thread = threading.Thread(target=self._run_audit, args=(job, script_path), daemon=True)
        thread.start()
        return True

    def _run_audit(self, job: Job, script_path: str):
        try:
            cmd = self._build_command(script_path, job.mode)
            LOG.info(f"Running: {' '.join(cmd)}")

            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True,
                                       bufsize=1, env=self._build_env())

            for line in iter(process.stdout.readline, ""):
                line = line.rstrip()
                if line:
                    with self._lock:
                        job.logs.append(line)
                    self._track_progress(job, line)

            process.wait()

            with self._lock:
                # Exit 1 after the report was initialized means "problems found"
                if process.returncode == 0 or (process.returncode == 1 and job.report_run):
                    job.status = JobStatus.COMPLETED
                    job.problems_found = process.returncode == 1
                else:
                    job.status = JobStatus.FAILED
                    job.error = f"Exit code: {process.returncode}"
                job.progress = 100
                job.completed_at = datetime.now().isoformat()
                self._current_job = None

        except Exception as e:
            LOG.error(f"Audit failed: {e}")
            with self._lock:
                job.status = JobStatus.FAILED
                job.error = str(e)
                job.completed_at = datetime.now().isoformat()
                self._current_job = None

    @staticmethod
    def _track_progress(job: Job, line: str):
        if "Report initialized" in line:
            job.progress = 5
            match = re.search(r"problems_(\d{8}_\d{6})\.txt", line)
            if match: job.report_run = match.group(1)
        elif "Fetching movies" in line or "Scanning movies" in line: job.progress = 10
        elif "Checked" in line and "movie" in line: job.progress = 50
        elif "Fetching series" in line or "Scanning episodes" in line: job.progress = 55
        elif "Hard Link Report" in line: job.progress = 95

    @staticmethod
    def _build_command(script_path: str, mode: str) -> List[str]:
        # settings.json is authoritative; skip any config.env next to the script
        return [sys.executable, script_path, "--config", os.devnull, mode]

    @staticmethod
    def _build_env() -> Dict[str, str]:
        env = dict(os.environ)
        env.update(settings.to_settings().to_env())
        env["PYTHONUNBUFFERED"] = "1"
        return env


job_manager = JobManager()


# =============================================================================
# FASTAPI APPLICATION
# =============================================================================

app = FastAPI(title="Linkarr", version=VERSION)
security = HTTPBasic(auto_error=False)


def verify_credentials(credentials: Optional[HTTPBasicCredentials] = Depends(security)) -> bool:
    web_cfg = settings.get("web") or {}
    if not web_cfg.get("auth_enabled"):
        return True
    if credentials is None:
        return False
    return (secrets.compare_digest(credentials.username, web_cfg.get("username", "")) and
            secrets.compare_digest(credentials.password, web_cfg.get("password", "")))


def require_auth(credentials: Optional[HTTPBasicCredentials] = Depends(security)):
    if not verify_credentials(credentials):
        raise HTTPException(status_code=401, detail="Unauthorized", headers={"WWW-Authenticate": "Basic"})
    return True


class RunRequest(BaseModel):
    mode: str = "all"


class RunResponse(BaseModel):
    job_id: str
    status: str
    message: str


class ConnectionTest(BaseModel):
    url: str = ""
    api_key: str = ""


RUN_MODES = ("all", "movies", "tv", "movies-fs", "tv-fs")


def report_dir() -> Path:
    return Path(settings.get("general", "report_dir") or DEFAULT_SETTINGS["general"]["report_dir"])


@app.get("/", response_class=HTMLResponse)
async def root(authenticated: bool = Depends(require_auth)):
    return get_dashboard_html()


@app.get("/settings", response_class=HTMLResponse)
async def settings_page(authenticated: bool = Depends(require_auth)):
    return get_settings_html()


@app.get("/api/health")
async def health():
    return {"status": "healthy", "version": VERSION}


@app.post("/api/run", response_model=RunResponse)
async def start_run(request: Optional[RunRequest] = Body(None), authenticated: bool = Depends(require_auth)):
    mode = request.mode if request else "all"
    if mode not in RUN_MODES:
        raise HTTPException(status_code=400, detail=f"Invalid mode: {mode}")
    if job_manager.is_running():
        raise HTTPException(status_code=409, detail="An audit is already running")
    if not LINKARR_SCRIPT.exists():
        raise HTTPException(status_code=500, detail="linkarr.py not found")
    job = job_manager.create_job(mode)
    if not job_manager.start_job(job, str(LINKARR_SCRIPT)):
        raise HTTPException(status_code=409, detail="An audit is already running")
    return RunResponse(job_id=job.id, status=job.status.value, message=f"Audit started ({mode})")


@app.get("/api/status/{job_id}")
async def get_job_status(job_id: str, authenticated: bool = Depends(require_auth)):
    job = job_manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_dict()


@app.get("/api/logs/{job_id}")
async def get_job_logs(job_id: str, offset: int = Query(0, ge=0), authenticated: bool = Depends(require_auth)):
    job = job_manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"logs": job.logs[offset:], "total": len(job.logs), "offset": offset, "status": job.status.value}


@app.get("/api/jobs")
async def list_jobs(authenticated: bool = Depends(require_auth)):
    return {"jobs": [j.to_dict() for j in job_manager.list_jobs()]}


@app.get("/api/runs")
async def list_runs(authenticated: bool = Depends(require_auth)):
    return {"runs": group_runs(report_dir())[:50]}


@app.get("/api/runs/{run_id}/{kind}")
async def get_artifact(run_id: str, kind: str, authenticated: bool = Depends(require_auth)):
    if not RUN_ID_RE.match(run_id):
        raise HTTPException(status_code=400, detail="Invalid run id")
    if kind not in ARTIFACTS:
        raise HTTPException(status_code=400, detail="Invalid artifact")
    pattern, media_type = ARTIFACTS[kind]
    file_path = report_dir() / pattern.format(run_id)
    if not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")
    if media_type == "text/plain":
        return PlainTextResponse(read_text(file_path))
    return FileResponse(path=file_path, filename=file_path.name, media_type=media_type)


# =============================================================================
# SETTINGS API
# =============================================================================

@app.get("/api/settings")
async def get_settings(authenticated: bool = Depends(require_auth)):
    return settings.get_all()


@app.get("/api/settings/{section}")
async def get_settings_section(section: str, authenticated: bool = Depends(require_auth)):
    data = settings.get_all().get(section)
    if data is None:
        raise HTTPException(status_code=404, detail=f"Unknown section: {section}")
    return data


@app.put("/api/settings/{section}")
async def update_settings(section: str, data: Dict[str, Any] = Body(...), authenticated: bool = Depends(require_auth)):
    if section not in DEFAULT_SETTINGS:
        raise HTTPException(status_code=400, detail=f"Invalid section: {section}")
    if settings.update(section, data):
        return {"success": True, "message": f"{section} settings updated"}
    raise HTTPException(status_code=500, detail="Failed to update settings")


@app.post("/api/settings/test/{app_type}")
async def test_connection(app_type: str, config: ConnectionTest = Body(...), authenticated: bool = Depends(require_auth)):
    if app_type not in ("sonarr", "radarr"):
        raise HTTPException(status_code=400, detail="Invalid app type")
    return settings.test_connection(app_type, config.model_dump())


# =============================================================================
# CSS STYLES
# =============================================================================

CSS = """
:root { --bg-primary: #0f0f1a; --bg-secondary: #1a1a2e; --bg-card: #252540; --bg-input: #1e1e35; --text-primary: #f0f0f0; --text-secondary: #a0a0b0; --accent: #6366f1; --accent-hover: #818cf8; --success: #22c55e; --error: #ef4444; --warning: #f59e0b; --border: #3f3f5a; }
* { box-sizing: border-box; margin: 0; padding: 0; }
body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; background: var(--bg-primary); color: var(--text-primary); line-height: 1.6; }
.container { max-width: 1100px; margin: 0 auto; padding: 20px; }
h1 { text-align: center; margin-bottom: 8px; font-size: 1.8rem; }
.subtitle { text-align: center; color: var(--text-secondary); margin-bottom: 24px; font-size: 0.9rem; }
.nav { display: flex; justify-content: center; gap: 8px; margin-bottom: 24px; }
.nav a { color: var(--text-secondary); text-decoration: none; padding: 10px 20px; border-radius: 8px; font-size: 0.9rem; }
.nav a.active { background: var(--accent); color: white; }
.grid { display: grid; grid-template-columns: repeat(auto-fit, minmax(320px, 1fr)); gap: 20px; margin-bottom: 24px; }
.card { background: var(--bg-card); border-radius: 12px; padding: 20px; border: 1px solid var(--border); margin-bottom: 20px; }
.card h2 { font-size: 1rem; margin-bottom: 16px; }
.btn { display: inline-flex; align-items: center; gap: 6px; padding: 10px 18px; border: none; border-radius: 8px; cursor: pointer; font-size: 0.9rem; text-decoration: none; }
.btn-primary { background: var(--accent); color: white; }
.btn-primary:disabled { opacity: 0.5; cursor: not-allowed; }
.btn-secondary { background: var(--bg-input); color: var(--text-primary); border: 1px solid var(--border); }
.log-box { background: var(--bg-primary); border-radius: 8px; padding: 12px; max-height: 320px; overflow-y: auto; font-family: monospace; font-size: 0.75rem; white-space: pre-wrap; border: 1px solid var(--border); }
.run-item { display: flex; justify-content: space-between; align-items: center; padding: 12px; background: var(--bg-secondary); border-radius: 8px; margin-bottom: 8px; }
.run-stats { font-size: 0.75rem; color: var(--text-secondary); }
.run-actions a { color: var(--accent); text-decoration: none; font-size: 0.8rem; margin-left: 8px; }
.empty-state { text-align: center; color: var(--text-secondary); padding: 40px; }
.status-ok { color: var(--success); }
.status-warn { color: var(--warning); }
.status-err { color: var(--error); }
.form-group { margin-bottom: 16px; }
.form-group label { display: block; margin-bottom: 6px; color: var(--text-secondary); font-size: 0.85rem; }
.form-group input, .form-group select { width: 100%; padding: 10px 12px; border: 1px solid var(--border); border-radius: 8px; background: var(--bg-input); color: var(--text-primary); }
.form-group small { display: block; margin-top: 4px; color: var(--text-secondary); font-size: 0.75rem; }
.form-row { display: grid; grid-template-columns: 1fr 1fr; gap: 16px; }
.test-result { margin-top: 8px; font-size: 0.8rem; }
"""


def get_dashboard_html() -> str:
    cfg = settings.get_all()
    sonarr_ok = bool(cfg.get("sonarr", {}).get("url"))
    radarr_ok = bool(cfg.get("radarr", {}).get("url"))
    mode_options = "".join(f'<option value="{m}">{m}</option>' for m in RUN_MODES)

    return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Linkarr</title>
    <style>{CSS}</style>
</head>
<body>
    <div class="container">
        <h1>Linkarr</h1>
        <p class="subtitle">Find library files that are copies instead of hard links</p>
        <nav class="nav">
            <a href="/" class="active">Dashboard</a>
            <a href="/settings">Settings</a>
        </nav>
        <div class="grid">
            <div class="card">
                <h2>Run Audit</h2>
                <div class="form-group"><select id="mode">{mode_options}</select></div>
                <button id="runBtn" class="btn btn-primary" onclick="startAudit()">Start Audit</button>
                <div id="statusText" style="margin-top: 12px; font-size: 0.85rem;"></div>
            </div>
            <div class="card">
                <h2>Integrations</h2>
                <div class="{'status-ok' if radarr_ok else 'status-err'}">Radarr: {'configured' if radarr_ok else 'not configured'}</div>
                <div class="{'status-ok' if sonarr_ok else 'status-err'}">Sonarr: {'configured' if sonarr_ok else 'not configured'}</div>
                <a href="/settings" class="btn btn-secondary" style="margin-top: 12px;">Configure</a>
            </div>
        </div>
        <div class="card">
            <h2>Recent Reports</h2>
            <div id="runsList"><div class="empty-state">Loading...</div></div>
        </div>
        <div class="card">
            <h2>Live Logs</h2>
            <div class="log-box" id="logBox">Waiting for audit...</div>
        </div>
    </div>
    <script>
        let currentJobId = null, pollInterval = null;
        async function startAudit() {{
            document.getElementById('runBtn').disabled = true;
            try {{
                const resp = await fetch('/api/run', {{ method: 'POST', headers: {{'Content-Type': 'application/json'}},
                    body: JSON.stringify({{mode: document.getElementById('mode').value}}) }});
                if (!resp.ok) throw new Error((await resp.json()).detail || 'Failed');
                currentJobId = (await resp.json()).job_id;
                document.getElementById('logBox').textContent = '';
                pollInterval = setInterval(pollStatus, 1000);
            }} catch (err) {{
                alert('Error: ' + err.message);
                document.getElementById('runBtn').disabled = false;
            }}
        }}
        async function pollStatus() {{
            if (!currentJobId) return;
            try {{
                const status = await (await fetch('/api/status/' + currentJobId)).json();
                document.getElementById('statusText').textContent = status.status + ' (' + status.progress + '%)';
                const logs = await (await fetch('/api/logs/' + currentJobId)).json();
                const box = document.getElementById('logBox');
                box.textContent = logs.logs.join('\\n');
                box.scrollTop = box.scrollHeight;
                if (status.status === 'completed' || status.status === 'failed') {{
                    clearInterval(pollInterval);
                    document.getElementById('runBtn').disabled = false;
                    document.getElementById('statusText').innerHTML = status.status === 'failed'
                        ? '<span class="status-err">Failed: ' + (status.error || '') + '</span>'
                        : (status.problems_found ? '<span class="status-warn">Completed, problems found</span>'
                                                 : '<span class="status-ok">Completed, no problems</span>');
                    loadRuns();
                }}
            }} catch (err) {{ console.error(err); }}
        }}
        async function loadRuns() {{
            try {{
                const data = await (await fetch('/api/runs')).json();
                const list = document.getElementById('runsList');
                if (!data.runs.length) {{ list.innerHTML = '<div class="empty-state">No reports yet. Run an audit to get started.</div>'; return; }}
                list.innerHTML = data.runs.slice(0, 10).map(r => `
                    <div class="run-item">
                        <div>
                            <div>${{r.id}}</div>
                            <div class="run-stats">${{r.problems_found}} file(s) without hard link</div>
                        </div>
                        <div class="run-actions">
                            ${{r.files.problems ? '<a href="/api/runs/' + r.id + '/problems" target="_blank">Problems</a>' : ''}}
                            ${{r.files.suggestions ? '<a href="/api/runs/' + r.id + '/suggestions" target="_blank">Suggestions</a>' : ''}}
                            ${{r.files.report ? '<a href="/api/runs/' + r.id + '/json" target="_blank">JSON</a>' : ''}}
                        </div>
                    </div>`).join('');
            }} catch (err) {{ document.getElementById('runsList').innerHTML = '<div class="empty-state">Failed to load</div>'; }}
        }}
        loadRuns();
    </script>
</body>
</html>'''


def _field(section: str, key: str, label: str, hint: str = "", kind: str = "text") -> str:
    return (f'<div class="form-group"><label>{label}</label>'
            f'<input type="{kind}" data-section="{section}" data-key="{key}">'
            f'{"<small>" + hint + "</small>" if hint else ""}</div>')


def get_settings_html() -> str:
    general = "".join([
        _field("general", "downloads_path", "Downloads path", "Root of the downloads tree"),
        _field("general", "media_path", "Media path", "Root of the library tree"),
        '<div class="form-row">',
        _field("general", "movies_media_subdir", "Movies media subdir"),
        _field("general", "tv_media_subdir", "TV media subdir"),
        _field("general", "movies_download_subdir", "Movies download subdir"),
        _field("general", "tv_download_subdir", "TV download subdir"),
        '</div>',
        _field("general", "report_dir", "Report directory"),
        _field("general", "resolve_sources", "Resolve sources from import history", kind="checkbox"),
        _field("general", "json_report", "Write JSON summary", kind="checkbox"),
        _field("general", "verbose", "Verbose output", kind="checkbox"),
    ])
    mappings = "".join(
        _field("path_mappings", key, f"{key.title()} mapping", "container_prefix:host_prefix")
        for key in ("movies", "tv", "downloads")
    )
    services = "".join(f'''
        <div class="card">
            <h2>{name.title()}</h2>
            {_field(name, "url", "URL", "e.g. http://192.168.1.10:" + port)}
            {_field(name, "api_key", "API key", "Leave empty to keep the stored key", kind="password")}
            <button class="btn btn-secondary" onclick="testConn('{name}')">Test</button>
            <button class="btn btn-primary" onclick="save('{name}')">Save</button>
            <div class="test-result" id="test-{name}"></div>
        </div>''' for name, port in (("radarr", "7878"), ("sonarr", "8989")))

    return f'''<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <meta name="viewport" content="width=device-width, initial-scale=1.0">
    <title>Settings - Linkarr</title>
    <style>{CSS}</style>
</head>
<body>
    <div class="container">
        <h1>Settings</h1>
        <nav class="nav">
            <a href="/">Dashboard</a>
            <a href="/settings" class="active">Settings</a>
        </nav>
        <div class="card">
            <h2>General</h2>
            {general}
            <button class="btn btn-primary" onclick="save('general')">Save</button>
        </div>
        <div class="card">
            <h2>Path mappings</h2>
            {mappings}
            <button class="btn btn-primary" onclick="save('path_mappings')">Save</button>
        </div>
        {services}
    </div>
    <script>
        function inputs(section) {{ return document.querySelectorAll('input[data-section="' + section + '"]'); }}
        function collect(section) {{
            const data = {{}};
            inputs(section).forEach(el => {{ data[el.dataset.key] = el.type === 'checkbox' ? el.checked : el.value; }});
            return data;
        }}
        async function load() {{
            const cfg = await (await fetch('/api/settings')).json();
            document.querySelectorAll('input[data-section]').forEach(el => {{
                const value = (cfg[el.dataset.section] || {{}})[el.dataset.key];
                if (el.type === 'checkbox') el.checked = !!value;
                else if (el.dataset.key === 'api_key') el.placeholder = cfg[el.dataset.section].api_key_masked || '';
                else el.value = value ?? '';
            }});
        }}
        async function save(section) {{
            const resp = await fetch('/api/settings/' + section, {{ method: 'PUT',
                headers: {{'Content-Type': 'application/json'}}, body: JSON.stringify(collect(section)) }});
            alert(resp.ok ? 'Saved' : 'Save failed');
            load();
        }}
        async function testConn(name) {{
            const out = document.getElementById('test-' + name);
            out.textContent = 'Testing...';
            const result = await (await fetch('/api/settings/test/' + name, {{ method: 'POST',
                headers: {{'Content-Type': 'application/json'}}, body: JSON.stringify(collect(name)) }})).json();
            out.className = 'test-result ' + (result.success ? 'status-ok' : 'status-err');
            out.textContent = result.message + (result.details ? ' - roots: ' + result.details.root_folders.join(', ') : '');
        }}
        load();
    </script>
</body>
</html>'''


# =============================================================================
# MAIN
# =============================================================================

def main():
    host = os.environ.get("HOST", "0.0.0.0")
    port = int(os.environ.get("PORT", "8080"))
    LOG.info(f"Starting Linkarr Web UI v{VERSION} on {host}:{port}")
    LOG.info(f"Config directory: {CONFIG_DIR}")
    cfg = settings.get_all_raw()
    if cfg.get("web", {}).get("auth_enabled"):
        LOG.info("Authentication enabled")
    else:
        LOG.warning("No authentication configured")
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
