import argparse
import json
import logging
import os
import sys

from dotenv import load_dotenv

from formats import OutputRequest, capabilities, normalize_bitrate
from naming import sanitize_label
from prober import fetch_video_info, probe
from selector import select_rendition
from transcoder import CaptureAdapter, TransformAdapter


def _print_progress(percent, marker=None):
    print(f"\r{percent:3d}%", end='', flush=True)


def _run(adapter):
    """Run an adapter on this thread and return (output_path, error)."""
    result = {}
    adapter.on_progress = _print_progress
    adapter.on_complete = lambda path: result.update(output=path)
    adapter.on_error = lambda message: result.update(error=message)
    adapter.run()
    print()
    return result.get('output'), result.get('error')


def cmd_serve(args):
    from media_server.app import create_app

    overrides = {}
    if args.port:
        overrides['PORT'] = args.port
    if args.host:
        overrides['HOST'] = args.host
    app = create_app(overrides)
    logging.info(f"Serving on {app.config['HOST']}:{app.config['PORT']}")
    try:
        app.run(host=app.config['HOST'], port=app.config['PORT'], threaded=True, use_reloader=False)
    finally:
        app.extensions['media_service'].shutdown()
    return 0


def cmd_convert(args):
    request = OutputRequest(
        format=args.format,
        quality=args.quality,
        sample_rate=args.sample_rate,
        bit_rate=normalize_bitrate(args.bit_rate),
        channels=args.channels,
    )
    output_file = args.output_file or f"{os.path.splitext(args.input_file)[0]}_converted.{args.format}"

    logging.info(f"Converting {args.input_file} -> {output_file}")
    adapter = TransformAdapter(args.input_file, output_file, request, owns_input=False, name='convert')
    output, error = _run(adapter)
    if error:
        logging.error(f"Conversion failed: {error}")
        return 1
    logging.info(f"Done: {output}")
    return 0


def cmd_capture(args):
    request = OutputRequest(format=args.format, quality=args.quality, audio_only=args.audio_only)
    info = fetch_video_info(args.url)
    rendition = select_rendition(info.renditions, request)
    stem = sanitize_label(info.title)

    logging.info(f"Capturing '{info.title}' ({info.platform}) into {args.output_dir}")
    adapter = CaptureAdapter(args.url, rendition, args.output_dir, stem, request, name='capture')
    output, error = _run(adapter)
    if error:
        logging.error(f"Capture failed: {error}")
        return 1
    logging.info(f"Done: {output}")
    return 0


def cmd_probe(args):
    print(json.dumps(probe(args.input_file).to_dict(), indent=2))
    return 0


def cmd_video_info(args):
    print(json.dumps(fetch_video_info(args.url).to_dict(), indent=2))
    return 0


def cmd_formats(args):
    print(json.dumps(capabilities(), indent=2))
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        description="Media Conversion Server: convert audio files and capture remote videos."
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    serve = subparsers.add_parser('serve', help="Run the HTTP server.")
    serve.add_argument("--host", type=str, default=None, help="Bind address (default: 0.0.0.0).")
    serve.add_argument("--port", type=int, default=None, help="Port (default: 3001).")
    serve.set_defaults(func=cmd_serve)

    convert = subparsers.add_parser('convert', help="Convert a local audio file.")
    convert.add_argument("input_file", help="Path to the input file.")
    convert.add_argument("output_file", nargs='?', default=None,
                         help="Path to the output file (default: <input>_converted.<format>).")
    convert.add_argument("--format", type=str, default="mp3", help="Output format (default: mp3).")
    convert.add_argument(
        "--quality",
        type=str,
        default="high",
        choices=["low", "medium", "high", "lossless"],
        help="Quality tier (default: high).",
    )
    convert.add_argument("--sample-rate", type=int, default=None, help="Output sample rate in Hz.")
    convert.add_argument("--bit-rate", type=str, default=None, help="Output bitrate, e.g. 192k.")
    convert.add_argument("--channels", type=int, default=None, help="Output channel count.")
    convert.set_defaults(func=cmd_convert)

    capture = subparsers.add_parser('capture', help="Download a video from a supported platform.")
    capture.add_argument("url", help="Video URL.")
    capture.add_argument("--output-dir", type=str, default=".", help="Destination directory (default: .).")
    capture.add_argument(
        "--quality",
        type=str,
        default="highest",
        choices=["highest", "1080p", "720p", "480p", "360p", "audio"],
        help="Target quality (default: highest).",
    )
    capture.add_argument(
        "--format",
        type=str,
        default="mp4",
        choices=["mp4", "webm", "mp3"],
        help="Output container (default: mp4).",
    )
    capture.add_argument("--audio-only", action="store_true", help="Download audio only.")
    capture.set_defaults(func=cmd_capture)

    probe_cmd = subparsers.add_parser('probe', help="Print media information for a local file.")
    probe_cmd.add_argument("input_file", help="Path to the media file.")
    probe_cmd.set_defaults(func=cmd_probe)

    info = subparsers.add_parser('info', help="Print information about a remote video.")
    info.add_argument("url", help="Video URL.")
    info.set_defaults(func=cmd_video_info)

    formats = subparsers.add_parser('formats', help="List supported formats.")
    formats.set_defaults(func=cmd_formats)

    return parser


def main(argv=None):
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(levelname)s - %(message)s')

    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (ValueError, LookupError, RuntimeError) as e:
        logging.error(str(e))
        return 1


if __name__ == "__main__":
    sys.exit(main())
