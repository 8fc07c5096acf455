"""
test_api_server.py
~~~~~~~~~~~~~~~~~~

Tests for the REST API using Flask's test client.
"""

import base64

import numpy as np
import pytest

from digitnet import api_server
from digitnet.datasets import one_hot_encode
from digitnet.model_persistence import get_network_metadata, load_network
from digitnet.network import Network


@pytest.fixture
def client(tmp_path, monkeypatch):
    """Test client with an isolated registry and empty in-memory state."""
    monkeypatch.setattr(api_server, 'MODEL_DIR', str(tmp_path / 'models'))
    monkeypatch.setattr(api_server, 'MNIST_DATA_DIR', str(tmp_path / 'no_data'))
    monkeypatch.setattr(api_server, 'training_data', None)
    monkeypatch.setattr(api_server, 'validation_data', None)
    monkeypatch.setattr(api_server, 'test_data', None)
    api_server.active_networks.clear()
    api_server.training_jobs.clear()

    api_server.app.config['TESTING'] = True
    with api_server.app.test_client() as test_client:
        yield test_client

    api_server.active_networks.clear()
    api_server.training_jobs.clear()


@pytest.fixture
def small_network_id(client):
    """Create a 4-3-2 network through the API."""
    response = client.post('/api/networks', json={
        'input_size': 4, 'hidden_sizes': [3], 'output_size': 2,
        'learning_rate': 0.5, 'seed': 3
    })
    assert response.status_code == 201
    return response.get_json()['network_id']


@pytest.fixture
def emitted(monkeypatch):
    """Record Socket.IO events instead of sending them."""
    events = []
    monkeypatch.setattr(
        api_server.socketio, 'emit',
        lambda event, data, **kwargs: events.append((event, data))
    )
    return events


@pytest.mark.unit
class TestNetworkEndpoints:

    def test_status(self, client):
        """Test the status endpoint on a fresh server."""
        response = client.get('/api/status')
        assert response.status_code == 200
        data = response.get_json()
        assert data['status'] == 'online'
        assert data['active_networks'] == 0
        assert data['data_loaded'] is False

    def test_create_network_defaults(self, client):
        """Test that the default architecture is the MNIST one."""
        response = client.post('/api/networks', json={})
        assert response.status_code == 201
        data = response.get_json()
        assert data['architecture'] == [784, 128, 64, 10]
        assert data['output_mode'] == 'softmax_cross_entropy'
        assert data['stopping_metric'] == 'maximize_accuracy'

    @pytest.mark.parametrize('body', [
        {'hidden_sizes': 'wide'},
        {'hidden_sizes': [3, 0]},
        {'input_size': 0},
        {'learning_rate': -1},
        {'output_mode': 'tanh'},
        {'seed': 'abc'},
    ])
    def test_create_network_invalid(self, client, body):
        """Test that invalid architectures are rejected."""
        assert client.post('/api/networks', json=body).status_code == 400

    def test_list_networks(self, client, small_network_id):
        """Test that in-memory networks are listed."""
        data = client.get('/api/networks').get_json()
        assert [n['network_id'] for n in data['networks']] == [small_network_id]
        assert data['networks'][0]['architecture'] == [4, 3, 2]

    def test_delete_network(self, client, small_network_id):
        """Test deleting a network and deleting it again."""
        response = client.delete(f'/api/networks/{small_network_id}')
        assert response.status_code == 200
        assert response.get_json()['deleted_from_memory'] is True

        response = client.delete(f'/api/networks/{small_network_id}')
        assert response.status_code == 404

    @pytest.mark.parametrize('raw, expected', [
        (None, 7), ('', 7), ('250', 250), ('0', 7), ('-3', 7), ('many', 7),
    ])
    def test_env_positive_int(self, monkeypatch, raw, expected):
        """Test that bad environment values fall back to the default."""
        if raw is None:
            monkeypatch.delenv('DIGITNET_TEST_INT', raising=False)
        else:
            monkeypatch.setenv('DIGITNET_TEST_INT', raw)
        assert api_server.env_positive_int('DIGITNET_TEST_INT', 7) == expected


@pytest.mark.unit
class TestPredict:

    def test_predict(self, client, small_network_id):
        """Test that predictions are a probability distribution."""
        response = client.post(
            f'/api/networks/{small_network_id}/predict',
            json={'inputs': [0.1, 0.2, 0.3, 0.4]}
        )
        assert response.status_code == 200
        data = response.get_json()
        assert len(data['network_output']) == 2
        assert sum(data['network_output']) == pytest.approx(1.0)
        assert data['predicted'] == int(np.argmax(data['network_output']))

    def test_predict_wrong_width(self, client, small_network_id):
        """Test that a wrong input width is a client error."""
        response = client.post(
            f'/api/networks/{small_network_id}/predict',
            json={'inputs': [0.1, 0.2]}
        )
        assert response.status_code == 400

    def test_predict_invalid_body(self, client, small_network_id):
        """Test that non-numeric inputs are rejected."""
        response = client.post(
            f'/api/networks/{small_network_id}/predict',
            json={'inputs': ['a', 'b', 'c', 'd']}
        )
        assert response.status_code == 400

    def test_predict_unknown_network(self, client):
        """Test that an unknown id is 404."""
        response = client.post('/api/networks/missing/predict', json={'inputs': [0.0]})
        assert response.status_code == 404


@pytest.mark.unit
class TestModelTransfer:

    def test_export_import_round_trip(self, client, small_network_id):
        """Test that an exported model imports into a new id unchanged."""
        exported = client.get(f'/api/networks/{small_network_id}/model')
        assert exported.status_code == 200
        assert exported.mimetype == 'application/octet-stream'

        response = client.put('/api/networks/copy/model', data=exported.data)
        assert response.status_code == 200
        assert response.get_json()['architecture'] == [4, 3, 2]

        x = [0.5, 0.1, 0.9, 0.3]
        original = api_server.active_networks[small_network_id]['network']
        copy = api_server.active_networks['copy']['network']
        assert np.array_equal(original.forward(x), copy.forward(x))
        assert load_network('copy', api_server.MODEL_DIR) is not None

    def test_import_replaces_topology(self, client, small_network_id):
        """Test that importing into an existing id replaces its layers."""
        other = Network(4, [5, 5], 2, seed=1)
        response = client.put(
            f'/api/networks/{small_network_id}/model', data=other.to_bytes()
        )
        assert response.status_code == 200
        assert api_server.active_networks[small_network_id]['architecture'] == [4, 5, 5, 2]

    def test_import_corrupt_model(self, client, small_network_id):
        """Test that truncated uploads are rejected."""
        response = client.put(
            f'/api/networks/{small_network_id}/model', data=b'\x01\x00\x00'
        )
        assert response.status_code == 400
        assert 'Corrupt model' in response.get_json()['error']

    def test_import_empty_body(self, client):
        """Test that an empty upload is rejected."""
        assert client.put('/api/networks/x/model', data=b'').status_code == 400

    def test_export_unknown_network(self, client):
        assert client.get('/api/networks/missing/model').status_code == 404


@pytest.mark.integration
class TestTraining:

    def test_train_unknown_network(self, client):
        """Test that training an unknown id is 404."""
        assert client.post('/api/networks/missing/train', json={}).status_code == 404

    @pytest.mark.parametrize('body', [
        {'epochs': 0},
        {'patience': 'x'},
        {'minimal_improvement': -0.1},
    ])
    def test_train_invalid_parameters(self, client, small_network_id, body):
        """Test that invalid training parameters are rejected."""
        response = client.post(f'/api/networks/{small_network_id}/train', json=body)
        assert response.status_code == 400

    def test_train_without_data(self, client, small_network_id):
        """Test that training is unavailable when MNIST can't be loaded."""
        response = client.post(f'/api/networks/{small_network_id}/train', json={})
        assert response.status_code == 503

    def test_train_network_task(self, client, small_network_id, emitted, monkeypatch):
        """Test a full background training job run synchronously."""
        samples = [
            (np.array([0.0, 0.0, 1.0, 1.0]), np.array([1.0, 0.0])),
            (np.array([1.0, 1.0, 0.0, 0.0]), np.array([0.0, 1.0])),
        ]
        monkeypatch.setattr(api_server, 'training_data', samples * 4)
        monkeypatch.setattr(api_server, 'validation_data', samples)
        monkeypatch.setattr(api_server, 'test_data', samples)

        job_id = 'job-1'
        api_server.training_jobs[job_id] = {
            'network_id': small_network_id, 'status': 'pending',
            'progress': 0, 'epochs': 20
        }
        api_server.train_network_task(small_network_id, job_id, 20, 3, None)

        status = client.get(f'/api/training/{job_id}').get_json()
        assert status['status'] == 'completed'
        assert status['progress'] == 100
        assert 1 <= status['epochs_run'] <= 20

        events = [event for event, _ in emitted]
        assert events[-1] == 'training_complete'
        assert events.count('training_update') == status['epochs_run']

        metadata = get_network_metadata(small_network_id, api_server.MODEL_DIR)
        assert metadata['trained'] is True
        assert metadata['accuracy'] == status['accuracy']

    def test_train_network_task_failure(self, client, small_network_id, emitted, monkeypatch):
        """Test that a failing job is marked failed and reported."""
        wrong_width = [(np.zeros(7), np.array([1.0, 0.0]))]
        monkeypatch.setattr(api_server, 'training_data', wrong_width)
        monkeypatch.setattr(api_server, 'validation_data', [])

        api_server.training_jobs['job-2'] = {
            'network_id': small_network_id, 'status': 'pending',
            'progress': 0, 'epochs': 1
        }
        api_server.train_network_task(small_network_id, 'job-2', 1, 1, None)

        assert api_server.training_jobs['job-2']['status'] == 'failed'
        assert emitted[-1][0] == 'training_error'

    def test_save_failure_is_recorded(self, client, small_network_id, emitted, monkeypatch):
        """Test that a job whose registry save fails says so."""
        samples = [(np.array([0.0, 0.0, 1.0, 1.0]), np.array([1.0, 0.0]))]
        monkeypatch.setattr(api_server, 'training_data', samples)
        monkeypatch.setattr(api_server, 'validation_data', [])
        monkeypatch.setattr(api_server, 'test_data', samples)
        monkeypatch.setattr(api_server, 'save_network', lambda *args, **kwargs: False)

        api_server.training_jobs['job-3'] = {
            'network_id': small_network_id, 'status': 'pending',
            'progress': 0, 'epochs': 1
        }
        api_server.train_network_task(small_network_id, 'job-3', 1, 1, None)

        assert api_server.training_jobs['job-3']['status'] == 'completed'
        assert api_server.training_jobs['job-3']['saved'] is False
        event, data = emitted[-1]
        assert event == 'training_complete'
        assert data['saved'] is False

    def test_unknown_job(self, client):
        assert client.get('/api/training/missing').status_code == 404


@pytest.mark.integration
class TestExamples:

    def test_correct_example(self, client, monkeypatch):
        """Test that a correctly classified test sample is rendered."""
        response = client.post('/api/networks', json={
            'input_size': 784, 'hidden_sizes': [], 'seed': 0
        })
        network_id = response.get_json()['network_id']
        net = api_server.active_networks[network_id]['network']

        rng = np.random.default_rng(0)
        samples = []
        for _ in range(3):
            x = rng.uniform(0, 1, size=784)
            samples.append((x, one_hot_encode(net.predict(x))))
        monkeypatch.setattr(api_server, 'training_data', samples)
        monkeypatch.setattr(api_server, 'test_data', samples)

        response = client.get(f'/api/networks/{network_id}/example?outcome=correct')
        assert response.status_code == 200
        data = response.get_json()
        assert data['predicted_digit'] == data['actual_digit']
        assert base64.b64decode(data['image_data']).startswith(b'\x89PNG')

        response = client.get(f'/api/networks/{network_id}/example?outcome=incorrect')
        assert response.status_code == 404

    def test_invalid_outcome(self, client, small_network_id):
        response = client.get(f'/api/networks/{small_network_id}/example?outcome=maybe')
        assert response.status_code == 400


@pytest.mark.integration
class TestExclusiveTraining:
    """A network being trained can't be trained, replaced or deleted."""

    @pytest.fixture
    def started_job(self, client, small_network_id, monkeypatch):
        """Start a training job whose background task hasn't run yet."""
        samples = [
            (np.array([0.0, 0.0, 1.0, 1.0]), np.array([1.0, 0.0])),
            (np.array([1.0, 1.0, 0.0, 0.0]), np.array([0.0, 1.0])),
        ]
        monkeypatch.setattr(api_server, 'training_data', samples)
        monkeypatch.setattr(api_server, 'validation_data', samples)
        monkeypatch.setattr(api_server, 'test_data', samples)

        tasks = []
        monkeypatch.setattr(
            api_server.socketio, 'start_background_task',
            lambda target, *args: tasks.append((target, args))
        )

        response = client.post(
            f'/api/networks/{small_network_id}/train',
            json={'epochs': 2, 'patience': 1}
        )
        assert response.status_code == 202
        return response.get_json()['job_id'], tasks

    def test_second_train_request_refused(self, client, small_network_id, started_job):
        job_id, tasks = started_job
        response = client.post(f'/api/networks/{small_network_id}/train', json={})
        assert response.status_code == 409
        assert response.get_json()['job_id'] == job_id
        assert len(tasks) == 1

    def test_import_during_training_refused(self, client, small_network_id, started_job):
        """Test that layers can't be swapped out under a running job."""
        other = Network(5, [], 2, seed=1)
        response = client.put(
            f'/api/networks/{small_network_id}/model', data=other.to_bytes()
        )
        assert response.status_code == 409
        assert api_server.active_networks[small_network_id]['architecture'] == [4, 3, 2]

    def test_delete_during_training_refused(self, client, small_network_id, started_job):
        response = client.delete(f'/api/networks/{small_network_id}')
        assert response.status_code == 409
        assert small_network_id in api_server.active_networks

    def test_network_released_when_job_ends(
            self, client, small_network_id, started_job, emitted):
        """Test that the network accepts a new job once the first one finishes."""
        job_id, tasks = started_job
        target, args = tasks[0]
        target(*args)

        assert api_server.training_jobs[job_id]['status'] == 'completed'
        assert 'training_job' not in api_server.active_networks[small_network_id]

        response = client.post(f'/api/networks/{small_network_id}/train', json={})
        assert response.status_code == 202

    def test_network_released_when_job_fails(
            self, client, small_network_id, started_job, emitted, monkeypatch):
        job_id, tasks = started_job
        monkeypatch.setattr(
            api_server, 'training_data',
            [(np.zeros(7), np.array([1.0, 0.0]))]
        )
        target, args = tasks[0]
        target(*args)

        assert api_server.training_jobs[job_id]['status'] == 'failed'
        assert client.delete(f'/api/networks/{small_network_id}').status_code == 200
