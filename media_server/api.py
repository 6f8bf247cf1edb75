from flask import Blueprint, Response, request, jsonify, current_app
import json
import os
import shutil
import uuid
from datetime import datetime
from werkzeug.utils import secure_filename

from formats import (
    OutputRequest, UnsupportedFormat, is_supported_input, normalize_bitrate, optional_int,
)
from media_server.delivery import ArtifactMissing
from media_server.state import JobNotFound, JobNotReady, JobStatus
from prober import InvalidSource, ProbeError
from selector import NoRenditionAvailable

api_bp = Blueprint('api', __name__, url_prefix='/api')

SSE_KEEPALIVE_SECONDS = 15


def get_service():
    return current_app.extensions['media_service']


# ── Error mapping ─────────────────────────────────────────────────────────────

@api_bp.errorhandler(UnsupportedFormat)
def unsupported_format(e):
    return jsonify({'error': str(e)}), 400


@api_bp.errorhandler(InvalidSource)
def invalid_source(e):
    return jsonify({'error': str(e)}), 400


@api_bp.errorhandler(NoRenditionAvailable)
def no_rendition(e):
    return jsonify({'error': str(e)}), 400


@api_bp.errorhandler(JobNotFound)
def job_not_found(e):
    return jsonify({'error': 'Job not found'}), 404


@api_bp.errorhandler(JobNotReady)
def job_not_ready(e):
    return jsonify({'error': 'Job not completed'}), 409


@api_bp.errorhandler(ArtifactMissing)
def artifact_missing(e):
    return jsonify({'error': 'Output file not found'}), 410


# ── Helpers ───────────────────────────────────────────────────────────────────

def save_upload(file):
    """Store an upload under a collision-free name and return its path."""
    filename = secure_filename(file.filename)
    extension = os.path.splitext(filename)[1].lower()
    upload_folder = current_app.config['UPLOAD_FOLDER']
    os.makedirs(upload_folder, exist_ok=True)
    file_path = os.path.join(upload_folder, f"{uuid.uuid4()}{extension}")
    file.save(file_path)
    return file_path


def get_upload():
    """The uploaded media file from the request, or (None, error response)."""
    file = request.files.get('audio', request.files.get('file'))
    if file is None:
        return None, (jsonify({'error': 'No audio file provided'}), 400)
    if file.filename == '':
        return None, (jsonify({'error': 'No selected file'}), 400)
    if not is_supported_input(file.filename, file.mimetype):
        return None, (jsonify({'error': 'Invalid file format'}), 400)
    return file, None


def parse_bool(value):
    if isinstance(value, bool):
        return value
    return str(value or '').lower() in ('true', '1', 'yes', 'on')


# ── Routes ────────────────────────────────────────────────────────────────────

@api_bp.route('/health', methods=['GET'])
def health():
    config = current_app.config
    return jsonify({
        'status': 'healthy',
        'timestamp': datetime.now().isoformat(),
        'ffmpeg': bool(shutil.which(config['FFMPEG_BIN']) or os.path.exists(config['FFMPEG_BIN'])),
        'ffprobe': bool(shutil.which(config['FFPROBE_BIN']) or os.path.exists(config['FFPROBE_BIN'])),
        'jobs': len(get_service().registry),
    })


@api_bp.route('/formats', methods=['GET'])
def formats():
    """List supported formats and quality tiers"""
    return jsonify(get_service().capabilities())


@api_bp.route('/convert', methods=['POST'])
def convert():
    """Upload a file and queue a conversion"""
    file, error = get_upload()
    if error:
        return error

    form = request.form
    output_request = OutputRequest(
        format=(form.get('format') or 'mp3').lower(),
        quality=(form.get('quality') or 'high').lower(),
        sample_rate=optional_int(form.get('sampleRate'), 'sample rate'),
        bit_rate=normalize_bitrate(form.get('bitRate')),
        channels=optional_int(form.get('channels'), 'channel count'),
    )

    input_path = save_upload(file)
    job_id = get_service().submit_transform(input_path, file.filename, output_request)

    return jsonify({
        'job_id': job_id,
        'status': JobStatus.QUEUED,
        'message': 'Conversion started',
        'original_name': file.filename,
        'output_format': output_request.format,
    }), 202


@api_bp.route('/info', methods=['POST'])
def info():
    """Probe an uploaded file without creating a job"""
    file, error = get_upload()
    if error:
        return error

    input_path = save_upload(file)
    try:
        result = get_service().probe(input_path)
    except ProbeError:
        return jsonify({'error': 'Invalid audio file'}), 400
    finally:
        if os.path.exists(input_path):
            os.remove(input_path)

    return jsonify(result.to_dict())


@api_bp.route('/video-info', methods=['POST'])
def video_info():
    """Describe a remote video and its available qualities"""
    data = request.get_json(silent=True) or {}
    return jsonify(get_service().video_info(data.get('url')).to_dict())


@api_bp.route('/capture', methods=['POST'])
def capture():
    """Queue a download of a remote video"""
    data = request.get_json(silent=True) or {}
    quality = str(data.get('quality') or 'highest').lower()
    output_request = OutputRequest(
        format=str(data.get('format') or 'mp4').lower(),
        quality=quality,
        resolution=optional_int(data.get('resolution'), 'resolution'),
        audio_only=parse_bool(data.get('audioOnly')) or quality == 'audio',
    )

    service = get_service()
    job_id = service.submit_capture(data.get('url'), output_request)
    job = service.registry.get(job_id)

    return jsonify({
        'job_id': job_id,
        'status': JobStatus.QUEUED,
        'message': 'Download started',
        'title': job.original_label,
        'filename': job.download_name,
    }), 202


@api_bp.route('/jobs/<job_id>', methods=['GET'])
def get_job(job_id):
    """Get job status"""
    return jsonify(get_service().get_status(job_id))


@api_bp.route('/jobs/<job_id>/download', methods=['GET'])
def download_job_artifact(job_id):
    """Stream the finished artifact; it is removed shortly after a full transfer"""
    artifact = get_service().open_download(job_id)

    return Response(
        artifact.stream(),
        mimetype='application/octet-stream',
        headers={
            'Content-Disposition': f'attachment; filename="{artifact.download_name}"',
            'Content-Length': str(artifact.size),
        },
    )


@api_bp.route('/progress', methods=['GET'])
def progress():
    """Server-Sent Events stream of job progress, optionally for one job"""
    service = get_service()
    job_id = request.args.get('job_id')
    subscription = service.subscribe(job_id)
    try:
        snapshot = service.registry.get(job_id) if job_id else None
    except JobNotFound:
        subscription.close()
        raise

    def generate():
        # highest progress sent per job; queued events older than the snapshot fall below it
        floors = {}
        with subscription:
            if snapshot is not None:
                floors[snapshot.id] = snapshot.progress
                yield f"data: {json.dumps(service.job_event(snapshot))}\n\n"
                if snapshot.is_terminal:
                    return
            while True:
                event = subscription.get(timeout=SSE_KEEPALIVE_SECONDS)
                if event is None:
                    yield ": keepalive\n\n"
                    continue
                if event['status'] not in JobStatus.TERMINAL:
                    if event['progress'] < floors.get(event['id'], 0):
                        continue
                    floors[event['id']] = event['progress']
                yield f"data: {json.dumps(event)}\n\n"
                if job_id and event['status'] in JobStatus.TERMINAL:
                    break

    return Response(generate(), mimetype='text/event-stream', headers={'Cache-Control': 'no-cache'})
