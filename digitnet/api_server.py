"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for digit recognition.

This module provides endpoints for:
- Creating and managing multilayer perceptrons
- Training networks with early stopping and real-time progress via WebSockets
- Predicting digits from drawn or uploaded pixel vectors
- Exporting and importing models in the binary model format
- Persisting networks to/from the SQLite registry

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- SQLite for network persistence
"""

import base64
import os
import sys
import uuid
import logging
from io import BytesIO
from typing import Any, Dict, List, Optional

import gevent
import numpy as np
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

from digitnet import datasets
from digitnet.exceptions import CorruptModel, DimensionMismatch, NetworkError
from digitnet.network import Network, OutputMode
from digitnet.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: silence chatty third-party loggers, keep ours at INFO
    - In development: show more detailed logs for debugging
    """
    log_level_str = os.getenv('LOG_LEVEL', 'INFO').upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    is_production = os.getenv('FLASK_ENV') == 'production'

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if is_production:
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('digitnet').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION
# ============================================================================

def env_positive_int(name: str, default: Optional[int] = None) -> Optional[int]:
    """Read a positive integer from the environment, falling back on bad values."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = 0
    if value < 1:
        logger.warning(
            f"Ignoring {name}={raw!r}: expected a positive integer, using {default}"
        )
        return default
    return value


MODEL_DIR = os.getenv('MODEL_DIR', 'models')
MNIST_DATA_DIR = os.getenv('MNIST_DATA_DIR', 'data')
MNIST_TRAINING_SAMPLES = env_positive_int('MNIST_TRAINING_SAMPLES')

# Defaults of the MNIST training program
DEFAULT_HIDDEN_SIZES = [128, 64]
DEFAULT_LEARNING_RATE = 0.01
DEFAULT_EPOCHS = 100
DEFAULT_PATIENCE = 5

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = os.getenv('FLASK_ENV') == 'production'

# SocketIO enables real-time communication (WebSockets) for training updates
socketio = SocketIO(
    app,
    cors_allowed_origins="*",
    async_mode='gevent',
    logger=not is_production,
    engineio_logger=not is_production,
    ping_timeout=60,
    ping_interval=25
)

# ============================================================================
# GLOBAL STATE
# ============================================================================

# Networks currently loaded in memory: {network_id: network_info}
active_networks: Dict[str, Dict[str, Any]] = {}

# Training jobs being tracked: {job_id: job_info}
training_jobs: Dict[str, Dict[str, Any]] = {}

# MNIST dataset, loaded on first use.
# Each entry is a tuple of (pixels, one_hot_label)
training_data: Any = None
validation_data: Any = None
test_data: Any = None


# ============================================================================
# DATA LOADING
# ============================================================================

def load_mnist_data() -> None:
    """Load the MNIST CSV files into global variables."""
    global training_data, validation_data, test_data

    logger.info(f"Loading MNIST data from {MNIST_DATA_DIR}...")
    try:
        training_data, validation_data, test_data = (
            datasets.load_data_wrapper(
                MNIST_DATA_DIR,
                training_samples=MNIST_TRAINING_SAMPLES
            )
        )
        logger.info(
            f"Data loaded: {len(training_data)} training, "
            f"{len(validation_data)} validation, {len(test_data)} test"
        )
    except Exception as e:
        logger.exception(f"Error loading MNIST data: {e}")
        raise


def ensure_data_loaded() -> bool:
    """Load MNIST if it isn't loaded yet; False if that fails."""
    if training_data is not None:
        return True
    try:
        load_mnist_data()
    except (OSError, ValueError):
        return False
    return True


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the registry into memory.

    Called at startup to restore networks saved before a restart.
    """
    saved_networks = list_saved_networks(MODEL_DIR)

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id, MODEL_DIR)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = {
            'network': net,
            'architecture': net.sizes,
            'trained': net_info['trained'],
            'accuracy': net_info['accuracy']
        }
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in np.asarray(array).flatten()]


def create_digit_image(pixels: np.ndarray, predicted: int, actual: int) -> str:
    """
    Create a base64-encoded PNG image of a digit.

    Args:
        pixels: 784 values in [0, 1] forming a 28x28 image
        predicted: The digit the network predicted
        actual: The correct digit

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(3, 3))
    plt.imshow(np.asarray(pixels).reshape(28, 28), cmap='gray')
    plt.title(f"Predicted: {predicted} | Actual: {actual}")
    plt.axis('off')

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64


def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _get_network(network_id: str) -> Optional[Network]:
    info = active_networks.get(network_id)
    return info['network'] if info else None


def _running_job(network_id: str) -> Optional[str]:
    """Id of the pending or running training job that owns the network."""
    info = active_networks.get(network_id) or {}
    job_id = info.get('training_job')
    if job_id and training_jobs.get(job_id, {}).get('status') in ('pending', 'training'):
        return job_id
    return None


def _busy_response(network_id: str, job_id: str):
    logger.warning(f"Network {network_id} is busy with training job {job_id}")
    return jsonify({
        'error': 'Network is being trained',
        'job_id': job_id
    }), 409


# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status with counts of networks and active jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training,
        'data_loaded': training_data is not None
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body (all optional):
        {
            'input_size': 784,
            'hidden_sizes': [128, 64],
            'output_size': 10,
            'learning_rate': 0.01,
            'output_mode': 'softmax_cross_entropy',
            'seed': 42
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}
    input_size = data.get('input_size', datasets.IMAGE_SIZE)
    hidden_sizes = data.get('hidden_sizes', DEFAULT_HIDDEN_SIZES)
    output_size = data.get('output_size', datasets.NUM_CLASSES)
    learning_rate = data.get('learning_rate', DEFAULT_LEARNING_RATE)
    output_mode = data.get('output_mode', OutputMode.SOFTMAX_CROSS_ENTROPY.value)
    seed = data.get('seed')

    if not _positive_int(input_size) or not _positive_int(output_size):
        return jsonify({
            'error': 'input_size and output_size must be positive integers'
        }), 400
    if (not isinstance(hidden_sizes, list)
            or not all(_positive_int(size) for size in hidden_sizes)):
        logger.warning(f"Invalid architecture requested: {hidden_sizes}")
        return jsonify({
            'error': 'hidden_sizes must be a list of positive integers'
        }), 400
    if not _number(learning_rate) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if output_mode not in {mode.value for mode in OutputMode}:
        return jsonify({
            'error': f'output_mode must be one of {[m.value for m in OutputMode]}'
        }), 400
    if seed is not None and not isinstance(seed, int):
        return jsonify({'error': 'seed must be an integer'}), 400

    network_id = str(uuid.uuid4())

    try:
        net = Network(
            input_size,
            hidden_sizes,
            output_size,
            learning_rate=learning_rate,
            output_mode=OutputMode(output_mode),
            seed=seed
        )
    except Exception as e:
        logger.exception(f"Error creating network: {e}")
        return jsonify({'error': f'Failed to create network: {str(e)}'}), 500

    active_networks[network_id] = {
        'network': net,
        'architecture': net.sizes,
        'trained': False,
        'accuracy': None
    }

    logger.info(f"Created network {network_id} with architecture {net.sizes}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'output_mode': net.output_mode.value,
        'stopping_metric': net.stopping_metric.value,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body (all optional):
        {'epochs': 100, 'patience': 5, 'minimal_improvement': 0.001}

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    running = _running_job(network_id)
    if running:
        return _busy_response(network_id, running)

    data = request.get_json(silent=True) or {}
    epochs =data.get('epochs', DEFAULT_EPOCHS)
    patience = data.get('patience', DEFAULT_PATIENCE)
    minimal_improvement = data.get('minimal_improvement')

    if not _positive_int(epochs):
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if not _positive_int(patience):
        return jsonify({'error': 'patience must be a positive integer'}), 400
    if minimal_improvement is not None and (
            not _number(minimal_improvement) or minimal_improvement < 0):
        return jsonify({
            'error': 'minimal_improvement must be a non-negative number'
        }), 400

    if not ensure_data_loaded():
        logger.error("Training data not loaded")
        return jsonify({'error': 'Training data not available'}), 503

    job_id = str(uuid.uuid4())
    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs
    }
    active_networks[network_id]['training_job'] = job_id

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, patience={patience}, "
        f"minimal_improvement={minimal_improvement}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, epochs, patience, minimal_improvement
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    epochs: int,
    patience: int,
    minimal_improvement: Optional[float]
) -> None:
    """
    Background task that trains a network with early stopping.

    Sends progress updates via WebSocket as training progresses and saves the
    trained network to the registry.
    """
    net = active_networks[network_id]['network']

    def on_epoch_complete(data: Dict[str, Any]) -> None:
        """Called after each training epoch to send progress updates."""
        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'loss': data['loss'],
            'accuracy': data['accuracy'],
            'validation_loss': data['validation_loss'],
            'validation_accuracy': data['validation_accuracy'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress,
            'correct': data.get('correct'),
            'total': data.get('total')
        })
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        train_inputs, train_targets = datasets.split_pairs(training_data)
        validation_inputs, validation_targets = datasets.split_pairs(
            validation_data or []
        )

        result = net.start_training(
            train_inputs,
            train_targets,
            validation_inputs or None,
            validation_targets or None,
            epochs=epochs,
            patience=patience,
            minimal_improvement=minimal_improvement,
            callback=on_epoch_complete,
            yield_func=lambda: gevent.sleep(0)
        )

        if test_data:
            test_inputs, test_targets = datasets.split_pairs(test_data)
            _, accuracy, _ = net.evaluate(test_inputs, test_targets)
        else:
            accuracy = result.final.accuracy

        active_networks[network_id]['trained'] = True
        active_networks[network_id]['accuracy'] = accuracy

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['accuracy'] = accuracy
        training_jobs[job_id]['progress'] = 100
        training_jobs[job_id]['epochs_run'] = result.epochs_run
        training_jobs[job_id]['stopped_early'] = result.stopped_early

        saved = save_network(net, network_id, model_dir=MODEL_DIR,
                             trained=True, accuracy=accuracy)
        training_jobs[job_id]['saved'] = saved
        if not saved:
            logger.error(
                f"Trained network {network_id} could not be saved to the registry"
            )

        logger.info(
            f"Training completed for job {job_id} after {result.epochs_run} "
            f"epoch(s): accuracy {accuracy:.2%}"
        )

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'accuracy': float(accuracy),
            'epochs_run': result.epochs_run,
            'stopped_early': result.stopped_early,
            'saved': saved,
            'progress': 100
        })
        gevent.sleep(0)

    except Exception as e:
        logger.exception(f"Training failed for job {job_id}: {e}")

        training_jobs[job_id]['status'] = 'failed'
        training_jobs[job_id]['error'] = str(e)

        socketio.emit('training_error', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'failed',
            'error': str(e)
        })
        gevent.sleep(0)

    finally:
        info = active_networks.get(network_id)
        if info and info.get('training_job') == job_id:
            del info['training_job']


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'trained': info['trained'],
            'accuracy': info['accuracy'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    in_memory_ids = set(active_networks.keys())
    saved_only = []
    for net in list_saved_networks(MODEL_DIR):
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and the registry."""
    running = _running_job(network_id)
    if running:
        return _busy_response(network_id, running)

    deleted_from_memory = active_networks.pop(network_id, None) is not None
    deleted_from_disk = delete_network(network_id, MODEL_DIR)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Classify one input vector.

    Request body:
        {'inputs': [0.0, 0.5, ...]}  # input_size values in [0, 1]

    Returns:
        JSON with the probability per class and the predicted class
    """
    net = _get_network(network_id)
    if net is None:
        logger.warning(f"Prediction requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    data = request.get_json(silent=True) or {}
    inputs = data.get('inputs')
    if not isinstance(inputs, list) or not all(_number(v) for v in inputs):
        return jsonify({'error': 'inputs must be a list of numbers'}), 400

    try:
        output = net.forward(inputs)
    except DimensionMismatch as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'predicted': int(np.argmax(output)),
        'network_output': array_to_float_list(output)
    }), 200


@app.route('/api/networks/<network_id>/example', methods=['GET'])
def get_example(network_id: str):
    """
    Return a random test sample the network classifies correctly or not.

    Query parameters:
        outcome: 'correct' (default) or 'incorrect'
    """
    net = _get_network(network_id)
    if net is None:
        logger.warning(f"Example requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    outcome = request.args.get('outcome', 'correct')
    if outcome not in ('correct', 'incorrect'):
        return jsonify({'error': "outcome must be 'correct' or 'incorrect'"}), 400

    if not ensure_data_loaded() or not test_data:
        logger.error("Test data not loaded")
        return jsonify({'error': 'Test data not available'}), 500

    want_correct = outcome == 'correct'
    max_attempts = 200
    for attempt in range(max_attempts):
        index = int(np.random.randint(0, len(test_data)))
        x, y = test_data[index]

        try:
            output = net.forward(x)
        except DimensionMismatch as e:
            return jsonify({'error': str(e)}), 400
        predicted_digit = int(np.argmax(output))
        actual_digit = int(np.argmax(y))

        if (predicted_digit == actual_digit) == want_correct:
            logger.debug(f"Found {outcome} example on attempt {attempt + 1}")
            return jsonify({
                'network_id': network_id,
                'example_index': index,
                'predicted_digit': predicted_digit,
                'actual_digit': actual_digit,
                'image_data': create_digit_image(x, predicted_digit, actual_digit),
                'network_output': array_to_float_list(output)
            }), 200

    logger.warning(f"No {outcome} example found after {max_attempts} attempts")
    return jsonify({
        'error': f'No {outcome} example found after {max_attempts} attempts'
    }), 404


@app.route('/api/networks/<network_id>/model', methods=['GET'])
def export_model(network_id: str):
    """Download the network in the binary model format."""
    net = _get_network(network_id)
    if net is None:
        return jsonify({'error': 'Network not found'}), 404

    return send_file(
        BytesIO(net.to_bytes()),
        mimetype='application/octet-stream',
        as_attachment=True,
        download_name=f'{network_id}.bin'
    )


@app.route('/api/networks/<network_id>/model', methods=['PUT'])
def import_model(network_id: str):
    """
    Replace a network's layers with an uploaded binary model.

    The upload is the raw request body. Creates the network if the id is new.
    """
    model_data = request.get_data()
    if not model_data:
        return jsonify({'error': 'Request body must contain a model'}), 400

    running = _running_job(network_id)
    if running:
        return _busy_response(network_id, running)

    net = _get_network(network_id)
    try:
        if net is None:
            net = Network.from_bytes(model_data)
            active_networks[network_id] = {
                'network': net,
                'architecture': net.sizes,
                'trained': True,
                'accuracy': None
            }
        else:
            net.load_bytes(model_data)
            active_networks[network_id]['architecture'] = net.sizes
    except CorruptModel as e:
        logger.warning(f"Rejected corrupt model upload for {network_id}: {e}")
        return jsonify({'error': f'Corrupt model: {e}'}), 400
    except NetworkError as e:
        return jsonify({'error': str(e)}), 400

    save_network(net, network_id, model_dir=MODEL_DIR, trained=True,
                 accuracy=active_networks[network_id]['accuracy'])
    logger.info(f"Imported model {net.sizes} into network {network_id}")

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'status': 'imported'
    }), 200


# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = env_positive_int('PORT', 8000)

    if is_production:
        logger.info(f"Starting server in production mode on port {port}")
    else:
        logger.info(f"Starting server at http://localhost:{port}/")

    if not ensure_data_loaded():
        logger.warning("MNIST data not available; training is disabled")
    reload_saved_networks()

    try:
        socketio.run(
            app,
            host='0.0.0.0',
            port=port,
            debug=not is_production,
            use_reloader=False,
            allow_unsafe_werkzeug=True
        )
    except OSError as e:
        if "Address already in use" in str(e):
            logger.error(f"Port {port} is already in use.")
            sys.exit(1)
        else:
            raise
