"""
api_server.py
~~~~~~~~~~~~~

Flask-based REST API server with WebSocket support for training networks.

This module provides endpoints for:
- Creating and managing networks
- Training networks on dense or sparse samples, with real-time progress
  updates via WebSockets
- Running predictions and exporting trained weights
- Persisting networks to/from the SQLite model store

The server uses:
- Flask for REST API endpoints
- Flask-SocketIO for WebSocket communication
- Gevent for async background training tasks
- Matplotlib for rendering training error curves
"""

import sys
import uuid
import base64
import logging
from io import BytesIO
from typing import Dict, Any, List, Optional

import gevent
import numpy as np
from flask import Flask, request, jsonify, Response
from flask_cors import CORS
from flask_socketio import SocketIO

# Use non-GUI backend for matplotlib (required for server environments)
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt

# Local imports
from neuro_net import config
from neuro_net.exceptions import NetworkError
from neuro_net.network import Network
from neuro_net.model_persistence import (
    save_network,
    load_network,
    list_saved_networks,
    delete_network,
    delete_old_networks
)

# ============================================================================
# LOGGING SETUP
# ============================================================================

def configure_logging() -> None:
    """
    Set up logging based on environment.

    - In production: Show fewer logs (less noise) but keep important logs
    - In development: Show more detailed logs for debugging
    """
    log_level = getattr(logging, config.get_log_level(), logging.INFO)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if config.is_production():
        for logger_name in ['socketio', 'engineio', 'engineio.server',
                            'socketio.server', 'werkzeug']:
            logging.getLogger(logger_name).setLevel(logging.WARNING)
        logging.getLogger('neuro_net').setLevel(logging.INFO)
    else:
        logging.getLogger('socketio').setLevel(logging.INFO)
        logging.getLogger('engineio').setLevel(logging.INFO)


configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FLASK APP SETUP
# ============================================================================

app = Flask(__name__)
CORS(app, resources={r"/*": {"origins": "*"}})

is_production = config.is_production()

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


def _network_info(net: Network, trained: bool = False,
                  mse: Optional[float] = None) -> Dict[str, Any]:
    return {
        'network': net,
        'architecture': net.sizes,
        'regression': net.regression,
        'trained': trained,
        'mse': mse,
        'history': []
    }


def reload_saved_networks() -> None:
    """
    Reload all saved networks from the model store into memory.

    Called at startup so networks saved before a restart stay available.
    Error histories are not stored and start out empty.
    """
    saved_networks = list_saved_networks()

    if not saved_networks:
        logger.info("No saved networks to reload")
        return

    loaded_count = 0
    for net_info in saved_networks:
        network_id = net_info['network_id']
        net = load_network(network_id)
        if net is None:
            logger.warning(f"Failed to load network {network_id}")
            continue
        active_networks[network_id] = _network_info(
            net, trained=net_info['trained'], mse=net_info['mse']
        )
        loaded_count += 1

    logger.info(f"Reloaded {loaded_count} network(s) from database")


reload_saved_networks()

# ============================================================================
# BACKGROUND TASKS
# ============================================================================

# Flag to ensure cleanup task only starts once
_cleanup_task_started = False


def cleanup_old_networks_task() -> None:
    """
    Background task that runs immediately on startup, then every 24 hours to:
    - Delete stored networks older than the retention period
    - Sync in-memory networks with the database
    - Remove completed/failed training jobs from memory
    """
    while True:
        try:
            days = config.get_retention_days()
            logger.info(f"Starting automatic cleanup of networks older than {days} day(s)")

            deleted_count = delete_old_networks(days=days)

            if deleted_count > 0:
                logger.info(f"Cleanup completed: deleted {deleted_count} network(s)")

                saved_ids = {net['network_id'] for net in list_saved_networks()}
                networks_to_remove = [
                    nid for nid, info in active_networks.items()
                    if info['trained'] and nid not in saved_ids
                ]
                for nid in networks_to_remove:
                    del active_networks[nid]
                    logger.info(f"Removed network {nid} from memory (deleted from database)")
            elif deleted_count == 0:
                logger.info("Cleanup completed: no old networks found to delete")
            else:
                logger.error("Cleanup returned error code")

            cleanup_finished_training_jobs()

            gevent.sleep(86400)

        except Exception as e:
            logger.exception(f"Error during network cleanup: {e}")
            gevent.sleep(3600)


def cleanup_finished_training_jobs() -> None:
    """Remove completed or failed training jobs from memory."""
    finished_statuses = {'completed', 'failed'}
    jobs_to_remove = [
        job_id for job_id, job_info in training_jobs.items()
        if job_info.get('status') in finished_statuses
    ]

    for job_id in jobs_to_remove:
        del training_jobs[job_id]

    if jobs_to_remove:
        logger.info(f"Cleaned up {len(jobs_to_remove)} finished training job(s)")


def start_cleanup_task() -> None:
    """
    Start the background cleanup task.

    Uses gevent.spawn() directly so it works both when running directly and
    under gunicorn. Calling it more than once has no effect.
    """
    global _cleanup_task_started

    if _cleanup_task_started:
        logger.debug("Cleanup task already started, skipping")
        return

    _cleanup_task_started = True
    logger.info("Starting cleanup task (runs immediately, then every 24 hours)")
    gevent.spawn(cleanup_old_networks_task)


# Start the cleanup task when module is loaded (works with gunicorn)
start_cleanup_task()

# ============================================================================
# REQUEST PARSING
# ============================================================================

def _positive_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and value >= 1


def _number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def parse_sparse_sample(sample: Any) -> Dict[int, float]:
    """
    Convert a JSON object with string keys into a sparse sample.

    Raises:
        ValueError: If the sample is not an object of index => number
    """
    if not isinstance(sample, dict):
        raise ValueError('sparse samples must be objects mapping index to value')
    parsed = {}
    for key, value in sample.items():
        try:
            index = int(key)
        except (TypeError, ValueError):
            raise ValueError(f'invalid sparse index: {key!r}')
        if not _number(value):
            raise ValueError(f'invalid value for index {key}: {value!r}')
        parsed[index] = float(value)
    return parsed


def array_to_float_list(array: np.ndarray) -> List[float]:
    """Convert a numpy array to a list of floats (for JSON serialization)."""
    return [float(val) for val in array.flatten()]


def create_error_plot(history: List[float], network_id: str) -> str:
    """
    Render the per-epoch MSE history as a base64-encoded PNG.

    Args:
        history: Mean squared error of each epoch
        network_id: Used in the plot title

    Returns:
        Base64-encoded PNG image string
    """
    plt.figure(figsize=(5, 3))
    plt.plot(range(1, len(history) + 1), history)
    plt.xlabel('Epoch')
    plt.ylabel('MSE')
    plt.title(f"Training error: {network_id[:8]}")

    buffer = BytesIO()
    plt.savefig(buffer, format='png', bbox_inches='tight')
    buffer.seek(0)
    img_base64 = base64.b64encode(buffer.getvalue()).decode('utf-8')
    plt.close()

    return img_base64

# ============================================================================
# API ENDPOINTS
# ============================================================================

@app.route('/api/status', methods=['GET'])
def get_status():
    """Return server status with counts of networks and running jobs."""
    active_statuses = ('pending', 'training')
    active_training = sum(
        1 for job in training_jobs.values()
        if job.get('status') in active_statuses
    )

    return jsonify({
        'status': 'online',
        'active_networks': len(active_networks),
        'training_jobs': active_training
    }), 200


@app.route('/api/networks', methods=['POST'])
def create_network():
    """
    Create a new network.

    Request body:
        {
            'input_size': 2,
            'hidden_size': 4,
            'output_size': 1,
            'regression': false,      # optional
            'learning_rate': 0.25,    # optional
            'momentum': 0.1,          # optional
            'seed': 42                # optional
        }

    Returns:
        JSON with network_id, architecture, and status
    """
    data = request.get_json(silent=True) or {}

    sizes = [data.get('input_size'), data.get('hidden_size'), data.get('output_size')]
    if not all(_positive_int(size) for size in sizes):
        logger.warning(f"Invalid architecture requested: {sizes}")
        return jsonify({
            'error': 'input_size, hidden_size and output_size must be positive integers'
        }), 400

    regression = data.get('regression', False)
    learning_rate = data.get('learning_rate', config.DEFAULT_LEARNING_RATE)
    momentum = data.get('momentum', config.DEFAULT_MOMENTUM)
    seed = data.get('seed')

    if not isinstance(regression, bool):
        return jsonify({'error': 'regression must be a boolean'}), 400
    if not _number(learning_rate) or learning_rate <= 0:
        return jsonify({'error': 'learning_rate must be a positive number'}), 400
    if not _number(momentum) or momentum < 0:
        return jsonify({'error': 'momentum must be a non-negative number'}), 400
    if seed is not None and not (
        isinstance(seed, int) and not isinstance(seed, bool) and seed >= 0
    ):
        return jsonify({'error': 'seed must be a non-negative integer'}), 400

    network_id = str(uuid.uuid4())
    net = Network(*sizes, regression=regression, learning_rate=learning_rate,
                  momentum=momentum, rng=seed)
    active_networks[network_id] = _network_info(net)

    logger.info(
        f"Created network {network_id} with architecture {net.sizes}, "
        f"regression={regression}, learning_rate={learning_rate}, momentum={momentum}"
    )

    return jsonify({
        'network_id': network_id,
        'architecture': net.sizes,
        'regression': regression,
        'status': 'created'
    }), 201


@app.route('/api/networks/<network_id>/train', methods=['POST'])
def train_network(network_id: str):
    """
    Start training a network in the background.

    Request body:
        {
            'inputs': [[0, 0], [0, 1]],         # dense samples, or
            'sparse_inputs': [{'1': 1.0}, {}],  # sparse samples
            'targets': [[0], [1]],
            'epochs': 100                       # optional
        }

    Returns:
        JSON with job_id, network_id, and status
    """
    if network_id not in active_networks:
        logger.warning(f"Training requested for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    if any(job['network_id'] == network_id and job['status'] in ('pending', 'training')
           for job in training_jobs.values()):
        return jsonify({'error': 'Network is already training'}), 409

    data = request.get_json(silent=True) or {}
    epochs = data.get('epochs', 100)
    targets = data.get('targets')
    sparse = 'sparse_inputs' in data
    inputs = data.get('sparse_inputs') if sparse else data.get('inputs')

    if not _positive_int(epochs):
        return jsonify({'error': 'epochs must be a positive integer'}), 400
    if not isinstance(inputs, list) or not isinstance(targets, list) or not inputs:
        return jsonify({'error': 'inputs (or sparse_inputs) and targets must be non-empty lists'}), 400
    if len(inputs) != len(targets):
        return jsonify({'error': 'inputs and targets must have the same length'}), 400

    try:
        if sparse:
            inputs = [parse_sparse_sample(sample) for sample in inputs]
        elif not all(isinstance(sample, list) for sample in inputs):
            raise ValueError('dense samples must be lists of numbers')
    except ValueError as e:
        return jsonify({'error': str(e)}), 400

    net = active_networks[network_id]['network']
    try:
        # Validate every sample before starting
        for sample, target in zip(inputs, targets):
            net.validate_sample(sample, target)
    except (NetworkError, TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    job_id = str(uuid.uuid4())

    training_jobs[job_id] = {
        'network_id': network_id,
        'status': 'pending',
        'progress': 0,
        'epochs': epochs,
        'sparse': sparse
    }

    logger.info(
        f"Created training job {job_id} for network {network_id}: "
        f"epochs={epochs}, samples={len(inputs)}, sparse={sparse}"
    )

    socketio.start_background_task(
        train_network_task,
        network_id, job_id, inputs, targets, epochs, sparse
    )

    return jsonify({
        'job_id': job_id,
        'network_id': network_id,
        'status': 'training_started'
    }), 202


def train_network_task(
    network_id: str,
    job_id: str,
    inputs: List[Any],
    targets: List[List[float]],
    epochs: int,
    sparse: bool = False
) -> None:
    """
    Background task that trains a network.

    Sends progress updates via WebSocket as training progresses.
    """
    info = active_networks[network_id]
    net = info['network']

    def on_progress(data: Dict[str, Any]) -> None:
        """Called by the training loop for progress and epoch events."""
        if data['event'] != 'epoch':
            return

        progress = (data['epoch'] / data['total_epochs']) * 100

        training_jobs[job_id]['status'] = 'training'
        training_jobs[job_id]['progress'] = progress
        training_jobs[job_id]['mse'] = data['mse']

        socketio.emit('training_update', {
            'job_id': job_id,
            'network_id': network_id,
            'epoch': data['epoch'],
            'total_epochs': data['total_epochs'],
            'mse': data['mse'],
            'elapsed_time': data['elapsed_time'],
            'progress': progress
        })

    def yield_to_other_tasks():
        gevent.sleep(0)

    try:
        logger.info(f"Starting training for job {job_id}")

        train = net.train_map if sparse else net.train
        history = train(
            inputs,
            targets,
            epochs,
            callback=on_progress,
            yield_func=yield_to_other_tasks
        )
        mse = history[-1]

        # The network may have been deleted while training yielded.
        if active_networks.get(network_id) is not info:
            logger.warning(f"Network {network_id} was deleted during job {job_id}; not saving")

            training_jobs[job_id]['status'] = 'failed'
            training_jobs[job_id]['error'] = 'network deleted during training'

            socketio.emit('training_error', {
                'job_id': job_id,
                'network_id': network_id,
                'status': 'failed',
                'error': 'network deleted during training'
            })
            return

        info['trained'] = True
        info['mse'] = mse
        info['history'].extend(history)

        training_jobs[job_id]['status'] = 'completed'
        training_jobs[job_id]['mse'] = mse
        training_jobs[job_id]['progress'] = 100

        save_network(net, network_id, trained=True, mse=mse)

        logger.info(f"Training completed for job {job_id}: MSE {mse:.5f}")

        socketio.emit('training_complete', {
            'job_id': job_id,
            'network_id': network_id,
            'status': 'completed',
            'mse': float(mse),
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


@app.route('/api/training/<job_id>', methods=['GET'])
def get_training_status(job_id: str):
    """Get the current status of a training job."""
    if job_id in training_jobs:
        return jsonify(training_jobs[job_id]), 200

    logger.warning(f"Status requested for non-existent job: {job_id}")
    return jsonify({'error': 'Training job not found'}), 404


@app.route('/api/networks/<network_id>/predict', methods=['POST'])
def predict(network_id: str):
    """
    Run a forward pass.

    Request body:
        {'input': [1.0, 0.0]}  or  {'sparse_input': {'0': 1.0}}

    Returns:
        JSON with the network output
    """
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    net = active_networks[network_id]['network']
    data = request.get_json(silent=True) or {}

    try:
        if 'sparse_input' in data:
            output = net.forward_map(parse_sparse_sample(data['sparse_input']))
        elif 'input' in data:
            output = net.forward(data['input'])
        else:
            return jsonify({'error': 'input or sparse_input is required'}), 400
    except (NetworkError, TypeError, ValueError) as e:
        return jsonify({'error': str(e)}), 400

    return jsonify({
        'network_id': network_id,
        'output': array_to_float_list(output)
    }), 200


@app.route('/api/networks', methods=['GET'])
def list_networks():
    """List all available networks (both in-memory and saved to disk)."""
    in_memory = [
        {
            'network_id': nid,
            'architecture': info['architecture'],
            'regression': info['regression'],
            'trained': info['trained'],
            'mse': info['mse'],
            'status': 'in_memory'
        }
        for nid, info in active_networks.items()
    ]

    in_memory_ids = set(active_networks.keys())
    saved_only = []
    for net in list_saved_networks():
        if net['network_id'] not in in_memory_ids:
            net['status'] = 'saved'
            saved_only.append(net)

    logger.debug(f"Listing networks: {len(in_memory)} in memory, {len(saved_only)} saved")

    return jsonify({'networks': in_memory + saved_only}), 200


@app.route('/api/networks/<network_id>/export', methods=['GET'])
def export_network(network_id: str):
    """Return the network's complete state in its JSON save format."""
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    buffer = BytesIO()
    active_networks[network_id]['network'].save(buffer)

    return Response(buffer.getvalue(), status=200, mimetype='application/json')


@app.route('/api/networks/<network_id>/error_plot', methods=['GET'])
def get_error_plot(network_id: str):
    """Return a PNG plot of the training error recorded in this process."""
    if network_id not in active_networks:
        return jsonify({'error': 'Network not found'}), 404

    history = active_networks[network_id]['history']
    if not history:
        return jsonify({'error': 'Network has no training history'}), 404

    return jsonify({
        'network_id': network_id,
        'epochs': len(history),
        'image_data': create_error_plot(history, network_id)
    }), 200


@app.route('/api/networks/<network_id>', methods=['DELETE'])
def delete_network_endpoint(network_id: str):
    """Delete a network from both memory and disk."""
    deleted_from_memory = False
    if network_id in active_networks:
        del active_networks[network_id]
        deleted_from_memory = True

    deleted_from_disk = delete_network(network_id)

    if not deleted_from_memory and not deleted_from_disk:
        logger.warning(f"Delete attempted for non-existent network: {network_id}")
        return jsonify({'error': 'Network not found'}), 404

    logger.info(f"Deleted network {network_id}: memory={deleted_from_memory}, disk={deleted_from_disk}")

    return jsonify({
        'network_id': network_id,
        'deleted_from_memory': deleted_from_memory,
        'deleted_from_disk': deleted_from_disk
    }), 200


@app.route('/api/networks', methods=['DELETE'])
def delete_all_networks():
    """Delete all networks from both memory and disk."""
    in_memory_ids = list(active_networks.keys())
    saved_ids = [net['network_id'] for net in list_saved_networks()]
    all_network_ids = list(set(in_memory_ids + saved_ids))

    deleted_from_memory_count = 0
    deleted_from_disk_count = 0

    for network_id in all_network_ids:
        if network_id in active_networks:
            del active_networks[network_id]
            deleted_from_memory_count += 1

        if delete_network(network_id):
            deleted_from_disk_count += 1

    logger.info(
        f"Deleted all networks: {len(all_network_ids)} total, "
        f"{deleted_from_memory_count} from memory, {deleted_from_disk_count} from disk"
    )

    return jsonify({
        'deleted_count': len(all_network_ids),
        'deleted_from_memory': deleted_from_memory_count,
        'deleted_from_disk': deleted_from_disk_count
    }), 200


@app.route('/api/networks/cleanup', methods=['POST'])
def cleanup_old_networks_endpoint():
    """
    Manually trigger cleanup of stored networks older than specified days.

    Request body (optional):
        {'days': 2}  # defaults to the configured retention period

    Returns:
        JSON with deleted_count and days
    """
    data = request.get_json(silent=True) or {}
    days = data.get('days', config.get_retention_days())

    if not _number(days) or days < 0:
        return jsonify({'error': 'days must be a non-negative number'}), 400

    deleted_count = delete_old_networks(days=int(days))

    if deleted_count == -1:
        return jsonify({'error': 'Error occurred during cleanup'}), 500

    logger.info(f"Manual cleanup: deleted {deleted_count} network(s) older than {days} day(s)")

    return jsonify({
        'deleted_count': deleted_count,
        'days': days
    }), 200

# ============================================================================
# SERVER STARTUP
# ============================================================================

if __name__ == '__main__':
    port = config.get_port()
    logger.info(f"Starting server at http://localhost:{port}/")

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
