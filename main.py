import os
import subprocess
import sys
from dashboard_server import app


def start_sync_worker():
    if os.getenv('SYNC_WORKER_AUTO_START', '0') != '1':
        return None
    # the reloader runs this module twice; only the parent spawns the worker
    if os.environ.get('WERKZEUG_RUN_MAIN') == 'true':
        return None
    script_path = os.path.join(os.path.dirname(__file__), 'sync_worker.py')
    if not os.path.exists(script_path):
        return None
    env = os.environ.copy()
    port = os.getenv('PORT', '5000')
    env.setdefault('LOCAL_API_BASE', f'http://127.0.0.1:{port}/api')
    return subprocess.Popen([sys.executable, script_path], env=env)


def main():
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    worker_proc = start_sync_worker()
    try:
        app.run(host=host, port=port, debug=debug)
    finally:
        if worker_proc:
            worker_proc.terminate()


if __name__ == '__main__':
    main()
