"""
Face Model Service - Main Application
Per-section face recognition model training and distribution
"""

import os
import logging
from flask import Flask, jsonify
from flask_cors import CORS
from flask_jwt_extended import JWTManager
from config import Config
from engines.vision.detector import HaarFaceDetector
from services.face_archive_refresher import FaceArchiveRefresher
from services.model_manager import ModelManager
from services.runtime_config import RuntimeConfig
from services.section_model_service import SectionModelService
from services.section_repository import SectionRepository
from services.storage_service import StorageService

# Configure logging
os.makedirs(os.path.dirname(Config.LOG_FILE) or '.', exist_ok=True)
logging.basicConfig(
    level=getattr(logging, Config.LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler(Config.LOG_FILE),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(Config)
app.url_map.strict_slashes = False

# Initialize extensions
CORS(app, resources={r"/api/*": {"origins": "*"}})
jwt = JWTManager(app)

# Runtime settings (hot-reloaded)
runtime_config = RuntimeConfig(Config.RUNTIME_CONFIG_FILE, poll_interval=Config.RUNTIME_CONFIG_POLL_SECONDS)
runtime_config.start_watching()

# Initialize database
repository = SectionRepository(Config.DATABASE_URL)

storage = StorageService(
    enabled=Config.STORAGE_ENABLED,
    endpoint_url=Config.STORAGE_ENDPOINT_URL,
    aws_access_key=Config.AWS_ACCESS_KEY_ID,
    aws_secret_key=Config.AWS_SECRET_ACCESS_KEY,
    aws_region=Config.AWS_REGION,
    download_timeout=Config.STORAGE_DOWNLOAD_TIMEOUT,
)

# One face detector shared by every preprocessor; tracks detection settings via the model manager
face_detector = HaarFaceDetector(runtime_config.vision.detection, model_dir=runtime_config.directories.model_dir)

model_manager = ModelManager(runtime_config, detector=face_detector)
model_manager.ensure_loaded()

section_models = SectionModelService(
    repository=repository,
    storage=storage,
    model_manager=model_manager,
    runtime_config=runtime_config,
    archive_refresher=FaceArchiveRefresher(
        url=Config.FACE_ARCHIVE_REFRESH_URL,
        token=Config.FACE_ARCHIVE_REFRESH_TOKEN,
        timeout=Config.FACE_ARCHIVE_REFRESH_TIMEOUT,
    ),
    model_bucket=Config.FACE_MODEL_BUCKET,
    archive_bucket=Config.FACE_ARCHIVE_BUCKET,
    max_workers=Config.SECTION_TRAINING_WORKERS,
    download_timeout=Config.STORAGE_DOWNLOAD_TIMEOUT,
)

# Make services available to blueprints
app.db = repository
app.face_detector = face_detector
app.model_manager = model_manager
app.section_models = section_models

# Register blueprints
from api.section_models import section_models_bp

app.register_blueprint(section_models_bp, url_prefix='/api/section-models')


@app.route('/api/health')
def health():
    """Liveness plus a summary of model state"""
    return jsonify({
        "status": "ok",
        "storage_enabled": storage.is_enabled(),
        "global_model_ready": model_manager.is_ready(),
        "face_detector_available": face_detector.is_available,
        "cached_sections": len(section_models.cached_section_ids()),
    }), 200


@app.errorhandler(404)
def not_found(error):
    return jsonify({"error": "Not found"}), 404


@app.errorhandler(500)
def internal_error(error):
    logger.error(f"Internal server error: {error}")
    return jsonify({"error": "Internal server error"}), 500


if __name__ == '__main__':
    logger.info(f"Starting face model service on {Config.HOST}:{Config.PORT}")
    try:
        app.run(host=Config.HOST, port=Config.PORT, debug=Config.FLASK_ENV == 'development', use_reloader=False)
    finally:
        section_models.shutdown(wait=False)
        model_manager.shutdown(wait=False)
        runtime_config.stop_watching()
        repository.close()
