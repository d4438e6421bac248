"""Dashboard HTML with inline CSS and vanilla JS."""


def get_dashboard_html() -> str:
    return """<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="viewport" content="width=device-width, initial-scale=1">
<title>Agent Orchestrator</title>
<style>
  :root {
    --bg: #0d1117; --surface: #161b22; --border: #30363d;
    --text: #e6edf3; --text-muted: #8b949e; --text-dim: #6e7681;
    --todo: #8b949e; --doing: #58a6ff; --review: #d29922; --done: #3fb950; --bad: #f85149;
  }
  * { margin: 0; padding: 0; box-sizing: border-box; }
  body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Helvetica, Arial, sans-serif;
         background: var(--bg); color: var(--text); line-height: 1.5; }
  .container { max-width: 1100px; margin: 0 auto; padding: 24px 16px; }
  header { display: flex; justify-content: space-between; align-items: center;
           padding-bottom: 16px; border-bottom: 1px solid var(--border); margin-bottom: 24px; }
  header h1 { font-size: 20px; font-weight: 600; }
  header button { background: var(--surface); color: var(--text-muted); border: 1px solid var(--border);
                  padding: 4px 10px; border-radius: 4px; cursor: pointer; font-size: 12px; }
  .summary { display: flex; gap: 16px; margin-bottom: 16px; flex-wrap: wrap; font-size: 14px; }
  .health { font-size: 12px; color: var(--text-dim); margin-bottom: 24px; }
  .columns { display: grid; grid-template-columns: 2fr 1fr; gap: 16px; }
  h2 { font-size: 14px; color: var(--text-muted); margin-bottom: 8px; }
  .card { background: var(--surface); border: 1px solid var(--border);
          border-radius: 8px; padding: 10px 14px; margin-bottom: 4px; }
  .card.review { margin-left: 24px; border-left: 3px solid var(--border); }
  .badge { display: inline-block; padding: 1px 8px; border-radius: 12px; font-size: 11px;
           font-weight: 600; text-transform: uppercase; }
  .badge.todo { color: var(--todo); }
  .badge.doing { color: var(--doing); }
  .badge.in_review, .badge.wait_accept, .badge.accepted { color: var(--review); }
  .badge.done { color: var(--done); }
  .badge.rejected, .badge.blocked { color: var(--bad); }
  .title { font-weight: 600; font-size: 14px; }
  .meta { font-size: 12px; color: var(--text-dim); font-family: monospace; }
  .reason { font-size: 12px; color: var(--bad); }
  .event { font-size: 12px; border-bottom: 1px solid var(--border); padding: 4px 0; }
  .event .action { color: var(--doing); }
  .empty { text-align: center; padding: 48px; color: var(--text-muted); }
</style>
</head>
<body>
<div class="container">
  <header>
    <h1>Agent Orchestrator</h1>
    <button onclick="loadDashboard()">Refresh</button>
  </header>
  <div id="summary" class="summary"></div>
  <div id="health" class="health"></div>
  <div class="columns">
    <div><h2>Tasks</h2><div id="tasks"></div></div>
    <div><h2>Activity</h2><div id="activity"></div></div>
  </div>
</div>

<script>
async function fetchJSON(path) {
  const res = await fetch(path);
  if (!res.ok) return null;
  return res.json();
}

async function loadDashboard() {
  const [status, tasks, events] = await Promise.all([
    fetchJSON('/api/status'),
    fetchJSON('/api/tasks'),
    fetchJSON('/api/activity?limit=50'),
  ]);

  if (status) {
    document.getElementById('summary').innerHTML = Object.entries(status.counts)
      .map(([s, n]) => `<span><span class="badge ${s}">${s}</span> ${n}</span>`).join('');
    document.getElementById('health').textContent =
      `persistence failures: ${status.persistence_failures}, ` +
      `activity write failures: ${status.activity_write_failures}`;
  }

  const taskEl = document.getElementById('tasks');
  if (!tasks || tasks.length === 0) {
    taskEl.innerHTML = '<div class="empty">No tasks yet</div>';
  } else {
    const reviews = tasks.filter(t => t.review_target_task_id);
    taskEl.innerHTML = tasks.filter(t => !t.review_target_task_id).map(t =>
      renderTask(t, false) +
      reviews.filter(r => r.review_target_task_id === t.id).map(r => renderTask(r, true)).join('')
    ).join('');
  }

  document.getElementById('activity').innerHTML = (events || []).slice().reverse().map(e =>
    `<div class="event"><span class="meta">${esc(e.timestamp.slice(11, 19))}</span>
     <span class="action">${esc(e.action)}</span> ${esc(e.detail)}</div>`
  ).join('');
}

function renderTask(task, isReview) {
  return `<div class="card${isReview ? ' review' : ''}">
    <span class="badge ${task.status}">${esc(task.status)}</span>
    <span class="title">${esc(task.title)}</span>
    <div class="meta">${esc(task.id)} ${task.assignee ? '&middot; ' + esc(task.assignee) : ''}
      ${task.rework_count ? '&middot; rework ' + task.rework_count : ''}</div>
    ${task.rework_reason ? `<div class="reason">${esc(task.rework_reason)}</div>` : ''}
  </div>`;
}

function esc(s) {
  if (!s) return '';
  const d = document.createElement('div');
  d.textContent = s;
  return d.innerHTML;
}

loadDashboard();
setInterval(loadDashboard, 10000);
</script>
</body>
</html>"""
