import os

from flask import Blueprint, send_from_directory
from flask_swagger_ui import get_swaggerui_blueprint

STATIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'static')

swagger_bp = Blueprint('swagger', __name__)

SWAGGER_URL = '/api/docs'
API_URL = '/api/swagger.json'

swaggerui_blueprint = get_swaggerui_blueprint(
    SWAGGER_URL,
    API_URL,
    config={
        'app_name': "Media Conversion Server API"
    }
)


@swagger_bp.route(API_URL)
def swagger_json():
    return send_from_directory(STATIC_DIR, 'swagger.json', mimetype='application/json')
