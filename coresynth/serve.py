#!/usr/bin/env python3
"""
Core Synthesis Server Launcher

Starts the web server and opens the interactive API docs in the browser.
"""

import logging
import os
import sys
import webbrowser
from threading import Timer

HOST = '127.0.0.1'
PORT = 8080


def open_browser(port=PORT):
    """Open default browser after a short delay."""
    webbrowser.open(f'http://localhost:{port}/docs')


def main():
    import argparse
    parser = argparse.ArgumentParser()
    parser.add_argument('--db', type=str, default=None,
                        help='SQLite database path (overrides CORESYNTH_DB)')
    parser.add_argument('--port', type=int, default=PORT)
    parser.add_argument('--no-browser', action='store_true',
                        help='Do not open the API docs in a browser')
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO,
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')

    print("=" * 60)
    print("Core Synthesis")
    print("=" * 60)
    if args.db:
        print(f"Database: {os.path.abspath(args.db)}")
    print(f"Server running at: http://localhost:{args.port}")
    if not os.environ.get('GEMINI_API_KEY'):
        print("GEMINI_API_KEY not set: AI features are disabled")
    print("Press Ctrl+C to stop the server")
    print("=" * 60)
    print()

    if not args.no_browser:
        Timer(1.5, open_browser, args=(args.port,)).start()

    try:
        import uvicorn

        from . import store
        if args.db:
            store._set_db_path_for_testing(os.path.abspath(args.db))

        from .app import app
        uvicorn.run(app, host=HOST, port=args.port, log_level='info')
    except OSError as e:
        print(f"Error: Could not start server: {e}", file=sys.stderr)
        print(f"Port {args.port} might already be in use.", file=sys.stderr)
        sys.exit(1)


if __name__ == '__main__':
    try:
        main()
    except KeyboardInterrupt:
        print("\n\nShutting down Core Synthesis...")
        sys.exit(0)
