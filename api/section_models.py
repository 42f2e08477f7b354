"""
Section Models API — retrain, bootstrap, purge and artifact download for
per-section face recognition models, control of the global model, and
face preprocessing with the shared detector.
"""
import io
import logging

from flask import Blueprint, request, jsonify, current_app, send_file
from flask_jwt_extended import jwt_required

from engines.vision.preprocess import CropOptions
from services.section_model_service import SectionModelError, SectionModelTrainingError
from services.storage_service import StorageDisabledError, StorageError

logger = logging.getLogger(__name__)

section_models_bp = Blueprint('section_models', __name__)


def _flag(name):
    return request.args.get(name, 'false').strip().lower() in ('1', 'true', 'yes')


def _error_response(error):
    if isinstance(error, SectionModelTrainingError):
        return jsonify(error.to_dict()), 422
    if isinstance(error, StorageDisabledError):
        return jsonify({"error": str(error)}), 503
    if isinstance(error, StorageError):
        return jsonify({"error": f"Storage failure: {error}"}), 502
    return jsonify({"error": str(error)}), 409


@section_models_bp.route('/<section_id>/retrain', methods=['POST'])
@jwt_required()
def retrain_section(section_id):
    """
    Retrain a section's model from its face archive.
    Queued by default (202); ``?sync=true`` waits and returns the result.
    """
    service = current_app.section_models
    if not _flag('sync'):
        service.retrain_section_async(section_id)
        return jsonify({"section_id": section_id, "status": "queued"}), 202

    try:
        result = service.retrain_section_sync(section_id)
    except (SectionModelError, StorageError) as e:
        return _error_response(e)
    return jsonify(result.to_dict()), 200


@section_models_bp.route('/<section_id>/initialize', methods=['POST'])
@jwt_required()
def initialize_section(section_id):
    try:
        recognizer = current_app.section_models.ensure_section_model_initialized(section_id)
    except StorageError as e:
        return _error_response(e)
    return jsonify({
        "section_id": section_id,
        "initialized": recognizer is not None,
        "trained": bool(recognizer is not None and recognizer.trained),
    }), 200


@section_models_bp.route('/<section_id>/deactivate', methods=['POST'])
@jwt_required()
def deactivate_section(section_id):
    try:
        current_app.section_models.deactivate_section(section_id)
    except StorageError as e:
        return _error_response(e)
    return jsonify({"section_id": section_id, "status": "deactivated"}), 200


@section_models_bp.route('/<section_id>', methods=['DELETE'])
@jwt_required()
def delete_section_model(section_id):
    known_path = (request.get_json(silent=True) or {}).get('model_storage_path')
    try:
        current_app.section_models.handle_section_deleted(section_id, known_path)
    except StorageError as e:
        return _error_response(e)
    return jsonify({"section_id": section_id, "status": "deleted"}), 200


@section_models_bp.route('/<section_id>/artifacts/<name>', methods=['GET'])
@jwt_required()
def download_artifact(section_id, name):
    """Download ``lbph.yml`` or ``labels.txt``; ``?compressed=true`` wraps it in a zip."""
    service = current_app.section_models
    compressed = _flag('compressed')
    try:
        if compressed:
            data = service.fetch_compressed_model_artifact(section_id, name)
        else:
            data = service.fetch_model_artifact(section_id, name)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400
    except StorageError as e:
        return _error_response(e)

    if data is None:
        return jsonify({"error": "Model artifact not found"}), 404

    if compressed:
        return send_file(io.BytesIO(data), mimetype='application/zip',
                         as_attachment=True, download_name=f"{name}.zip")
    mimetype = 'text/plain' if name.endswith('.txt') else 'application/x-yaml'
    return send_file(io.BytesIO(data), mimetype=mimetype, as_attachment=True, download_name=name)


# ==================== GLOBAL MODEL ====================

@section_models_bp.route('/global/retrain', methods=['POST'])
@jwt_required()
def retrain_global():
    current_app.model_manager.retrain_all()
    return jsonify({"status": "queued"}), 202


@section_models_bp.route('/global/status', methods=['GET'])
@jwt_required()
def global_status():
    manager = current_app.model_manager
    return jsonify({
        "ready": manager.is_ready(),
        "faces_dir": manager.faces_dir,
        "model_dir": manager.model_dir,
        "dataset": manager.collect_dataset_stats().to_dict(),
        "cached_sections": current_app.section_models.cached_section_ids(),
    }), 200


# ==================== FACE PREPROCESSING ====================

CROP_FIELDS = ('frame_width', 'frame_height', 'x', 'y', 'width', 'height')


@section_models_bp.route('/faces/preprocess', methods=['POST'])
@jwt_required()
def preprocess_face():
    """
    Crop and normalize one uploaded frame the way enrollment images are.
    Optional form fields describe a face box hint; without one the shared
    detector locates the face.
    """
    upload = request.files.get('image')
    if upload is None:
        return jsonify({"error": "No image file provided"}), 400

    try:
        options = CropOptions(**{
            name: int(request.form[name]) for name in CROP_FIELDS if request.form.get(name)
        })
        data = current_app.model_manager.create_processor().process(upload.read(), options)
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    return send_file(io.BytesIO(data), mimetype='image/jpeg', download_name='face.jpg')
