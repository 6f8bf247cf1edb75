import os
import runpy
import sys

import media_server

RUN_SCRIPT = os.path.join(os.path.dirname(media_server.__file__), 'run.py')
REPO_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(RUN_SCRIPT)))


def test_run_as_script_puts_repo_root_on_path(monkeypatch, mocker):
    monkeypatch.setattr(sys, 'path', [p for p in sys.path if os.path.abspath(p or '.') != REPO_ROOT])
    create_app = mocker.patch('media_server.app.create_app')
    mocker.patch('dotenv.load_dotenv')

    runpy.run_path(RUN_SCRIPT, run_name='__main__')

    assert sys.path[0] == REPO_ROOT
    app = create_app.return_value
    assert app.run.call_args.kwargs['threaded'] is True
    app.extensions['media_service'].shutdown.assert_called_once_with()


def test_entry_point_main(mocker):
    from media_server import run

    create_app = mocker.patch('media_server.app.create_app')
    mocker.patch.object(run, 'load_dotenv')
    run.main()
    create_app.return_value.run.assert_called_once()
