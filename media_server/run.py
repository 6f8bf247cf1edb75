#!/usr/bin/env python3
"""
Media Conversion Server
Upload-and-convert and remote video capture over HTTP

Run as a script (python media_server/run.py), as a module
(python -m media_server.run) or through the media-server-run entry point.
"""
import logging
import os
import sys

from dotenv import load_dotenv


def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    from media_server.app import create_app

    app = create_app()
    port = app.config['PORT']

    print("=" * 60)
    print("Media Conversion Server")
    print("=" * 60)
    print(f"Starting server on http://localhost:{port}")
    print(f"API docs at http://localhost:{port}/api/docs")
    print("Press CTRL+C to stop")
    print("=" * 60)

    try:
        app.run(debug=True, host=app.config['HOST'], port=port, threaded=True, use_reloader=False)
    finally:
        app.extensions['media_service'].shutdown()


if __name__ == '__main__':
    # the engine modules live beside the package, one level up from this file
    sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
    main()
