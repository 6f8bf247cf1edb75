from flask import Flask, jsonify
import os
from werkzeug.exceptions import RequestEntityTooLarge

from media_server.api import api_bp
from media_server.service import JobService
from media_server.swagger import swagger_bp, swaggerui_blueprint
from prober import resolve_ffmpeg_bin, resolve_ffprobe_bin

# Use absolute paths for upload/output folders
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

DEFAULTS = {
    'UPLOAD_FOLDER': os.path.join(BASE_DIR, 'data', 'uploads'),
    'OUTPUT_FOLDER': os.path.join(BASE_DIR, 'data', 'outputs'),
    'MAX_CONTENT_LENGTH': 500 * 1024 * 1024,  # 500MB max
    'FFMPEG_BIN': None,
    'FFPROBE_BIN': None,
    'TRANSFORM_MAX_AGE': 60 * 60,
    'CAPTURE_MAX_AGE': 2 * 60 * 60,
    'SWEEP_INTERVAL': 30 * 60,
    'STALL_TIMEOUT': 10 * 60,
    'ORPHAN_MAX_AGE': 60 * 60,
    'TRANSFORM_DELIVERY_GRACE': 5,
    'CAPTURE_DELIVERY_GRACE': 10,
    'INPUT_CLEANUP_GRACE': 1,
    'START_SWEEPER': True,
    'HOST': '0.0.0.0',
    'PORT': 3001,
}

# Settings that may come from the environment, and how to read them
_ENV_TYPES = {
    'UPLOAD_FOLDER': str,
    'OUTPUT_FOLDER': str,
    'MAX_CONTENT_LENGTH': int,
    'FFMPEG_BIN': str,
    'FFPROBE_BIN': str,
    'TRANSFORM_MAX_AGE': float,
    'CAPTURE_MAX_AGE': float,
    'SWEEP_INTERVAL': float,
    'STALL_TIMEOUT': float,
    'ORPHAN_MAX_AGE': float,
    'TRANSFORM_DELIVERY_GRACE': float,
    'CAPTURE_DELIVERY_GRACE': float,
    'INPUT_CLEANUP_GRACE': float,
    'START_SWEEPER': lambda v: v.lower() in ('true', '1', 'yes'),
    'HOST': str,
    'PORT': int,
}


def load_config(app, overrides=None):
    app.config.update(DEFAULTS)
    for key, cast in _ENV_TYPES.items():
        value = os.environ.get(key)
        if value not in (None, ''):
            app.config[key] = cast(value)
    if overrides:
        app.config.update(overrides)

    if not app.config['FFMPEG_BIN']:
        app.config['FFMPEG_BIN'] = resolve_ffmpeg_bin()
    if not app.config['FFPROBE_BIN']:
        app.config['FFPROBE_BIN'] = resolve_ffprobe_bin()


def create_app(config=None):
    """Build the Flask app and the job service behind it."""
    app = Flask(__name__)
    load_config(app, config)

    # Ensure directories exist
    os.makedirs(app.config['UPLOAD_FOLDER'], exist_ok=True)
    os.makedirs(app.config['OUTPUT_FOLDER'], exist_ok=True)

    service = JobService(
        app.config['UPLOAD_FOLDER'],
        app.config['OUTPUT_FOLDER'],
        ffmpeg_bin=app.config['FFMPEG_BIN'],
        ffprobe_bin=app.config['FFPROBE_BIN'],
        delivery_grace={
            'transform': app.config['TRANSFORM_DELIVERY_GRACE'],
            'capture': app.config['CAPTURE_DELIVERY_GRACE'],
        },
        input_cleanup_grace=app.config['INPUT_CLEANUP_GRACE'],
        max_age={
            'transform': app.config['TRANSFORM_MAX_AGE'],
            'capture': app.config['CAPTURE_MAX_AGE'],
        },
        sweep_interval=app.config['SWEEP_INTERVAL'],
        stall_timeout=app.config['STALL_TIMEOUT'],
        orphan_max_age=app.config['ORPHAN_MAX_AGE'],
        start_sweeper=app.config['START_SWEEPER'],
    )
    app.extensions['media_service'] = service

    app.register_blueprint(api_bp)
    app.register_blueprint(swagger_bp)
    app.register_blueprint(swaggerui_blueprint)

    @app.errorhandler(RequestEntityTooLarge)
    def too_large(e):
        limit_mb = app.config['MAX_CONTENT_LENGTH'] // (1024 * 1024)
        return jsonify({'error': f'File too large. Maximum size is {limit_mb}MB.'}), 413

    return app
