"""Read-only web dashboard API over the orchestrator's state snapshot."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from agent_orchestrator.config import get_config
from agent_orchestrator.core import tasks as tasks_mod
from agent_orchestrator.db.models import to_jsonable
from agent_orchestrator.db.store import Store
from agent_orchestrator.web.dashboard import get_dashboard_html


def _read_store() -> Store:
    """Load the latest snapshot written by the MCP server process."""
    config = get_config()
    store = Store(state_file=config.state_file)
    store.load()
    return store


def _int_param(request: Request, name: str, default: int) -> int:
    try:
        return int(request.query_params.get(name, default))
    except ValueError:
        return default


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_status(request: Request):
    summary = tasks_mod.status_summary(_read_store())
    summary.pop("tasks")
    return JSONResponse(to_jsonable(summary))


async def api_list_tasks(request: Request):
    params = request.query_params
    tasks = tasks_mod.list_tasks(
        _read_store(),
        status=params.get("status"),
        assignee=params.get("assignee"),
        workflow_id=params.get("workflow_id"),
        task_type=params.get("task_type"),
    )
    return JSONResponse(to_jsonable(tasks))


async def api_get_task(request: Request):
    task_id = request.path_params["task_id"]
    store = _read_store()
    task = tasks_mod.get_task(store, task_id)
    if not task:
        return JSONResponse({"error": "Task not found"}, status_code=404)
    td = to_jsonable(task)
    td["run_meta"] = to_jsonable(store.run_meta.get(task_id))
    td["reviews"] = to_jsonable(
        [t for t in store.tasks if t.review_target_task_id == task_id]
    )
    return JSONResponse(td)


async def api_activity(request: Request):
    params = request.query_params
    result = tasks_mod.activity_log(
        _read_store(),
        workflow_id=params.get("workflow_id"),
        agent_id=params.get("agent_id"),
        limit=_int_param(request, "limit", 50),
    )
    return JSONResponse(to_jsonable(result["events"]))


async def api_list_workflows(request: Request):
    return JSONResponse(to_jsonable(_read_store().workflows))


async def api_get_workflow(request: Request):
    workflow_id = request.path_params["workflow_id"]
    store = _read_store()
    workflow = store.find_workflow(workflow_id)
    if not workflow:
        return JSONResponse({"error": "Workflow not found"}, status_code=404)
    wd = to_jsonable(workflow)
    wd["tasks"] = to_jsonable(tasks_mod.list_tasks(store, workflow_id=workflow_id))
    return JSONResponse(wd)


# ── App ───────────────────────────────────────────────────────────────────────


def create_app() -> Starlette:
    routes = [
        Route("/", index),
        Route("/api/status", api_status),
        Route("/api/tasks", api_list_tasks),
        Route("/api/tasks/{task_id}", api_get_task),
        Route("/api/activity", api_activity),
        Route("/api/workflows", api_list_workflows),
        Route("/api/workflows/{workflow_id}", api_get_workflow),
    ]
    return Starlette(routes=routes)


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
