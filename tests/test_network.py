"""
test_network.py
~~~~~~~~~~~~~~~

Unit tests for the backpropagation network: construction, forward and
backward passes (dense and sparse), the training loop and persistence.
"""

import io
import json
import logging
import math

import numpy as np
import pytest

from neuro_net.exceptions import InputSizeMismatch, IOFailure, OutputSizeMismatch
from neuro_net.network import Network, dsigmoid, random_permutation, sigmoid

XOR_INPUTS = [[0.0, 0.0], [0.0, 1.0], [1.0, 0.0], [1.0, 1.0]]
XOR_TARGETS = [[0.0], [1.0], [1.0], [0.0]]


@pytest.fixture
def network():
    """A small classification network with a fixed seed."""
    return Network(3, 4, 2, rng=7)


def reference_step(net, inputs, target):
    """
    Plain-loop forward and backward step on copies of ``net``'s state.

    Returns the updated (weight_hidden, weight_output, last_change_hidden,
    last_change_output, output_layer).
    """
    wh = net.weight_hidden.tolist()
    wo = net.weight_output.tolist()
    lch = net.last_change_hidden.tolist()
    lco = net.last_change_output.tolist()
    rate1, rate2 = net.learning_rate, net.momentum

    x = list(inputs) + [1.0]
    hidden = []
    for i in range(len(wh)):
        hidden.append(1.0 / (1.0 + math.exp(-sum(x[j] * wh[i][j] for j in range(len(x))))))
    hidden.append(1.0)
    output = []
    for i in range(len(wo)):
        s = sum(hidden[j] * wo[i][j] for j in range(len(hidden)))
        output.append(s if net.regression else 1.0 / (1.0 + math.exp(-s)))

    err_output = [output[i] - target[i] for i in range(len(output))]
    err_hidden = []
    for i in range(len(hidden) - 1):
        err = 0.0
        for j in range(len(output)):
            if net.regression:
                err += err_output[j] * wo[j][i]
            else:
                err += err_output[j] * wo[j][i] * output[j] * (1.0 - output[j])
        err_hidden.append(err)

    for i in range(len(output)):
        for j in range(len(hidden)):
            if net.regression:
                delta = err_output[i]
            else:
                delta = err_output[i] * output[i] * (1.0 - output[i])
            change = rate1 * delta * hidden[j] + rate2 * lco[i][j]
            wo[i][j] -= change
            lco[i][j] = change

    for i in range(len(hidden) - 1):
        for j in range(len(x)):
            delta = err_hidden[i] * hidden[i] * (1.0 - hidden[i])
            change = rate1 * delta * x[j] + rate2 * lch[i][j]
            wh[i][j] -= change
            lch[i][j] = change

    return (np.array(wh), np.array(wo), np.array(lch), np.array(lco),
            np.array(output))


@pytest.mark.unit
class TestActivation:
    """Test the sigmoid and its derivative."""

    def test_sigmoid_values(self):
        """Test sigmoid at a few known points."""
        assert sigmoid(0.0) == pytest.approx(0.5)
        assert sigmoid(2.0) == pytest.approx(1.0 / (1.0 + math.exp(-2.0)))
        assert sigmoid(-3.0) == pytest.approx(1.0 / (1.0 + math.exp(3.0)))

    def test_sigmoid_does_not_overflow(self):
        """Test that extreme inputs saturate without producing NaN."""
        with np.errstate(over='raise'):
            values = sigmoid(np.array([-1000.0, 1000.0]))
        assert values[0] == pytest.approx(0.0)
        assert values[1] == pytest.approx(1.0)

    def test_dsigmoid_uses_output(self):
        """Test that dsigmoid is y * (1 - y) of a sigmoid output."""
        y = sigmoid(0.3)
        assert dsigmoid(y) == pytest.approx(y * (1.0 - y))
        assert dsigmoid(0.5) == pytest.approx(0.25)


@pytest.mark.unit
class TestConstruction:
    """Test network shapes and initial state."""

    def test_layer_and_matrix_shapes(self, network):
        """Test the shapes for a 3-4-2 network."""
        assert len(network.input_layer) == 4
        assert len(network.hidden_layer) == 5
        assert len(network.output_layer) == 2
        assert network.weight_hidden.shape == (4, 4)
        assert network.weight_output.shape == (2, 5)
        assert network.last_change_hidden.shape == (4, 4)
        assert network.last_change_output.shape == (2, 5)
        assert network.err_output.shape == (2,)
        assert network.err_hidden.shape == (4,)
        assert network.sizes == [3, 4, 2]

    def test_initial_weights_and_momentum(self, network):
        """Test that weights lie in [-1, 1] and momentum starts at zero."""
        assert np.all(network.weight_hidden >= -1.0)
        assert np.all(network.weight_hidden <= 1.0)
        assert np.all(network.weight_output >= -1.0)
        assert np.all(network.weight_output <= 1.0)
        assert not network.last_change_hidden.any()
        assert not network.last_change_output.any()

    def test_bias_slots(self, network):
        """Test that both bias units hold 1.0."""
        assert network.input_layer[-1] == 1.0
        assert network.hidden_layer[-1] == 1.0

    def test_default_rates(self):
        """Test the convenience constructor's rates."""
        net = Network.default(2, 3, 1, regression=True)
        assert net.learning_rate == 0.25
        assert net.momentum == 0.1
        assert net.regression is True

    def test_same_seed_same_weights(self):
        """Test that a seed makes initialisation reproducible."""
        a = Network(3, 4, 2, rng=11)
        b = Network(3, 4, 2, rng=11)
        assert np.array_equal(a.weight_hidden, b.weight_hidden)
        assert np.array_equal(a.weight_output, b.weight_output)

    @pytest.mark.parametrize('sizes', [(0, 2, 1), (2, 0, 1), (2, 2, 0), (2.5, 2, 1)])
    def test_invalid_sizes(self, sizes):
        """Test that non-positive or non-integer sizes are rejected."""
        with pytest.raises(ValueError):
            Network(*sizes)


@pytest.mark.unit
class TestForward:
    """Test the dense and sparse forward passes."""

    def test_output_length(self, network):
        """Test that forward returns one value per output unit."""
        output = network.forward([0.1, -0.4, 0.9])
        assert output.shape == (2,)

    def test_classification_outputs_in_unit_interval(self, network):
        """Test that sigmoid outputs lie strictly between 0 and 1."""
        rng = np.random.default_rng(3)
        for _ in range(20):
            output = network.forward(rng.uniform(-2, 2, size=3))
            assert np.all(output > 0.0)
            assert np.all(output < 1.0)

    def test_regression_outputs_unbounded(self):
        """Test that regression outputs can leave [0, 1]."""
        net = Network(2, 3, 1, regression=True, rng=1)
        net.weight_output[:] = 10.0
        output = net.forward([0.5, 0.5])
        assert output[0] > 1.0

    def test_forward_is_repeatable(self, network):
        """Test that the same input gives the same output for fixed weights."""
        first = network.forward([0.2, 0.3, 0.4])
        second = network.forward([0.2, 0.3, 0.4])
        assert np.array_equal(first, second)

    def test_forward_returns_copy(self, network):
        """Test that the returned output is not the internal layer."""
        output = network.forward([0.2, 0.3, 0.4])
        output[:] = 42.0
        assert not np.any(network.output_layer == 42.0)

    def test_forward_matches_reference(self, network):
        """Test forward against a plain-loop computation."""
        output = network.forward([0.5, -1.0, 2.0])
        expected = reference_step(network, [0.5, -1.0, 2.0], [0.0, 0.0])[4]
        assert np.allclose(output, expected)

    def test_wrong_input_length(self, network):
        """Test that a wrong-length input raises and leaves weights alone."""
        weight_hidden = network.weight_hidden.copy()
        weight_output = network.weight_output.copy()
        input_layer = network.input_layer.copy()

        with pytest.raises(InputSizeMismatch) as exc_info:
            network.forward([1.0, 2.0])

        assert exc_info.value.expected == 3
        assert exc_info.value.actual == 2
        assert np.array_equal(network.weight_hidden, weight_hidden)
        assert np.array_equal(network.weight_output, weight_output)
        assert np.array_equal(network.input_layer, input_layer)

    def test_input_mismatch_is_value_error(self, network):
        """Test that InputSizeMismatch can be caught as ValueError."""
        with pytest.raises(ValueError):
            network.forward([[1.0, 2.0, 3.0]])

    def test_sparse_matches_dense_when_complete(self):
        """Test that a complete sparse map gives the dense output."""
        dense = Network(3, 4, 2, rng=5)
        sparse = Network(3, 4, 2, rng=5)
        x = [0.3, -0.7, 1.2]

        assert np.allclose(
            dense.forward(x),
            sparse.forward_map({0: 0.3, 1: -0.7, 2: 1.2})
        )

    def test_sparse_overlays_previous_input(self, network):
        """Test that unlisted indices keep their value but do not contribute."""
        network.forward_map({0: 1.0, 2: 0.5})
        network.forward_map({1: 2.0})

        assert network.input_layer[0] == 1.0
        assert network.input_layer[1] == 2.0
        assert network.input_layer[2] == 0.5
        assert network.input_layer[3] == 1.0

        columns = [1, 3]
        expected = sigmoid(network.weight_hidden[:, columns] @ np.array([2.0, 1.0]))
        assert np.allclose(network.hidden_layer[:-1], expected)

    def test_sparse_index_out_of_range(self, network):
        """Test that sparse indices outside the input layer are rejected."""
        with pytest.raises(InputSizeMismatch):
            network.forward_map({3: 1.0})
        with pytest.raises(InputSizeMismatch):
            network.forward_map({-1: 1.0})

    def test_sparse_requires_mapping(self, network):
        """Test that a list is not accepted as a sparse sample."""
        with pytest.raises(TypeError):
            network.forward_map([1.0, 2.0, 3.0])


@pytest.mark.unit
class TestBackward:
    """Test error backpropagation and weight updates."""

    @pytest.mark.parametrize('regression', [False, True])
    def test_matches_reference(self, regression):
        """Test one dense step against the plain-loop reference."""
        net = Network(3, 4, 2, regression=regression, rng=2)
        net.last_change_hidden[:] = 0.01
        net.last_change_output[:] = -0.02
        x, target = [0.5, -0.25, 1.0], [0.2, 0.9]

        wh, wo, lch, lco, _ = reference_step(net, x, target)
        net.forward(x)
        net.backward(target)

        assert np.allclose(net.weight_hidden, wh)
        assert np.allclose(net.weight_output, wo)
        assert np.allclose(net.last_change_hidden, lch)
        assert np.allclose(net.last_change_output, lco)

    def test_momentum_records_change(self, network):
        """Test that every weight update is stored as the last change."""
        before_hidden = network.weight_hidden.copy()
        before_output = network.weight_output.copy()

        network.forward([0.1, 0.2, 0.3])
        network.backward([1.0, 0.0])

        assert np.allclose(before_hidden - network.weight_hidden,
                           network.last_change_hidden)
        assert np.allclose(before_output - network.weight_output,
                           network.last_change_output)

    def test_error_buffers(self, network):
        """Test that err_output is the raw residual of the last step."""
        output = network.forward([0.1, 0.2, 0.3])
        network.backward([1.0, 0.0])
        assert np.allclose(network.err_output, output - np.array([1.0, 0.0]))

    def test_bias_slots_untouched(self, network):
        """Test that the bias units stay at 1.0 after training steps."""
        for _ in range(5):
            network.forward([0.4, 0.5, 0.6])
            network.backward([0.0, 1.0])
        assert network.input_layer[-1] == 1.0
        assert network.hidden_layer[-1] == 1.0

    def test_wrong_target_length(self, network):
        """Test that a wrong-length target raises OutputSizeMismatch."""
        network.forward([0.1, 0.2, 0.3])
        weight_output = network.weight_output.copy()
        with pytest.raises(OutputSizeMismatch):
            network.backward([1.0])
        assert np.array_equal(network.weight_output, weight_output)

    def test_sparse_matches_dense_when_complete(self):
        """Test that complete sparse steps update weights like dense ones."""
        dense = Network(3, 4, 2, rng=9)
        sparse = Network(3, 4, 2, rng=9)
        samples = [[0.3, -0.7, 1.2], [1.0, 0.0, -0.5], [0.2, 0.2, 0.2]]
        target = [0.0, 1.0]

        for x in samples:
            dense.forward(x)
            dense.backward(target)
            sample = dict(enumerate(x))
            sparse.forward_map(sample)
            sparse.backward_map(target, sample)

        assert np.allclose(dense.weight_hidden, sparse.weight_hidden)
        assert np.allclose(dense.weight_output, sparse.weight_output)
        assert np.allclose(dense.last_change_hidden, sparse.last_change_hidden)
        assert np.allclose(dense.last_change_output, sparse.last_change_output)

    def test_sparse_updates_listed_columns_only(self, network):
        """Test that sparse steps leave unlisted input columns alone."""
        before = network.weight_hidden.copy()
        sample = {1: 0.5}

        network.forward_map(sample)
        network.backward_map([1.0, 0.0], sample)

        assert np.array_equal(network.weight_hidden[:, [0, 2]], before[:, [0, 2]])
        assert not np.array_equal(network.weight_hidden[:, 1], before[:, 1])
        assert not np.array_equal(network.weight_hidden[:, 3], before[:, 3])


@pytest.mark.unit
class TestCalcError:
    """Test the squared error metric."""

    def test_zero_for_exact_target(self, network):
        """Test that the error is zero when output equals target."""
        output = network.forward([0.1, 0.2, 0.3])
        assert network.calc_error(output) == 0.0

    def test_half_squared_error(self, network):
        """Test the value and sign of the error."""
        output = network.forward([0.1, 0.2, 0.3])
        target = output + np.array([0.5, -0.1])
        assert network.calc_error(target) == pytest.approx(0.5 * (0.25 + 0.01))
        assert network.calc_error(target) > 0.0

    def test_does_not_touch_error_buffers(self, network):
        """Test that calc_error leaves err_output unchanged."""
        network.forward([0.1, 0.2, 0.3])
        network.calc_error([1.0, 1.0])
        assert not network.err_output.any()


@pytest.mark.unit
class TestRandomPermutation:
    """Test the epoch shuffle."""

    def test_is_permutation(self):
        """Test that every index appears exactly once."""
        order = random_permutation(50, np.random.default_rng(0))
        assert sorted(order) == list(range(50))

    def test_seeded_is_deterministic(self):
        """Test that equal seeds give equal orders."""
        a = random_permutation(20, np.random.default_rng(4))
        b = random_permutation(20, np.random.default_rng(4))
        assert a == b

    def test_edge_sizes(self):
        """Test empty and single-element permutations."""
        rng = np.random.default_rng(0)
        assert random_permutation(0, rng) == []
        assert random_permutation(1, rng) == [0]


@pytest.mark.unit
class TestTraining:
    """Test the training loop."""

    def test_returns_history(self):
        """Test that train returns one non-negative MSE per epoch."""
        net = Network.default(2, 3, 1, rng=0)
        history = net.train(XOR_INPUTS, XOR_TARGETS, 5)
        assert len(history) == 5
        assert all(mse >= 0.0 for mse in history)

    def test_xor_converges(self):
        """Test that XOR is learned with the default rates."""
        for seed in range(3):
            net = Network.default(2, 4, 1, rng=seed)
            history = net.train(XOR_INPUTS, XOR_TARGETS, 10000)
            outputs = [net.forward(x)[0] for x in XOR_INPUTS]
            if all(abs(o - t[0]) < 0.1 for o, t in zip(outputs, XOR_TARGETS)):
                break
        else:
            pytest.fail(f"XOR did not converge, outputs {outputs}")

        assert np.mean(history[:100]) > np.mean(history[-100:])

    def test_regression_fits_linear_target(self):
        """Test that regression mode reduces error on a linear target."""
        rng = np.random.default_rng(1)
        inputs = rng.uniform(-1, 1, size=(30, 2))
        targets = (inputs @ np.array([[0.5], [-0.3]])) + 0.2

        net = Network(2, 5, 1, regression=True, learning_rate=0.05, rng=1)
        history = net.train(inputs, targets, 200)

        assert history[-1] < history[0]

    def test_sparse_training_matches_dense(self):
        """Test that train_map on complete maps follows dense training."""
        sparse_inputs = [{0: x[0], 1: x[1]} for x in XOR_INPUTS]
        dense = Network.default(2, 4, 1, rng=3)
        sparse = Network.default(2, 4, 1, rng=3)

        dense_history = dense.train(XOR_INPUTS, XOR_TARGETS, 50)
        sparse_history = sparse.train_map(sparse_inputs, XOR_TARGETS, 50)

        assert len(sparse_history) == 50
        assert np.allclose(dense_history, sparse_history)
        assert np.allclose(dense.weight_hidden, sparse.weight_hidden)

    def test_callback_events(self):
        """Test the progress and epoch events passed to the callback."""
        events = []
        yields = []
        net = Network.default(2, 3, 1, rng=0)

        net.train(XOR_INPUTS, XOR_TARGETS, 3, callback=events.append,
                  yield_func=lambda: yields.append(1), progress_interval=2)

        progress = [e for e in events if e['event'] == 'progress']
        epochs = [e for e in events if e['event'] == 'epoch']
        assert len(progress) == 6
        assert [e['epoch'] for e in epochs] == [1, 2, 3]
        assert all(e['total_epochs'] == 3 for e in epochs)
        assert progress[0]['sample'] == 2
        assert progress[0]['progress'] == pytest.approx(50.0)
        assert len(yields) == 9

    def test_epoch_log_cadence(self, caplog):
        """Test that epoch MSE is logged about ten times on long runs."""
        net = Network.default(2, 3, 1, rng=0)

        with caplog.at_level(logging.INFO, logger='neuro_net.network'):
            net.train(XOR_INPUTS, XOR_TARGETS, 20)
        assert sum('MSE' in r.getMessage() for r in caplog.records) == 10

        caplog.clear()
        with caplog.at_level(logging.INFO, logger='neuro_net.network'):
            net.train(XOR_INPUTS, XOR_TARGETS, 4)
        assert sum('MSE' in r.getMessage() for r in caplog.records) == 4

    def test_first_sample_shapes_checked(self):
        """Test that bad first samples abort before any update."""
        net = Network.default(2, 3, 1, rng=0)
        weights = net.weight_hidden.copy()

        with pytest.raises(InputSizeMismatch):
            net.train([[0.0]], [[1.0]], 1)
        with pytest.raises(OutputSizeMismatch):
            net.train([[0.0, 1.0]], [[1.0, 0.0]], 1)
        with pytest.raises(OutputSizeMismatch):
            net.train_map([{0: 1.0}], [[1.0, 0.0]], 1)

        assert np.array_equal(net.weight_hidden, weights)

    def test_mismatched_collections(self):
        """Test that unequal or empty sample collections are rejected."""
        net = Network.default(2, 3, 1, rng=0)
        with pytest.raises(ValueError):
            net.train(XOR_INPUTS, XOR_TARGETS[:2], 1)
        with pytest.raises(ValueError):
            net.train([], [], 1)

    def test_same_seed_same_training(self):
        """Test that training is reproducible with a fixed seed."""
        a = Network.default(2, 3, 1, rng=21)
        b = Network.default(2, 3, 1, rng=21)
        assert a.train(XOR_INPUTS, XOR_TARGETS, 10) == b.train(XOR_INPUTS, XOR_TARGETS, 10)
        assert np.array_equal(a.weight_hidden, b.weight_hidden)


@pytest.mark.unit
class TestPersistence:
    """Test saving and loading networks."""

    @pytest.fixture
    def trained(self):
        net = Network(2, 4, 1, regression=True, learning_rate=0.1, momentum=0.3, rng=8)
        net.train(XOR_INPUTS, XOR_TARGETS, 20)
        return net

    def assert_same_state(self, a, b):
        for name in ('input_layer', 'hidden_layer', 'output_layer',
                     'weight_hidden', 'weight_output', 'last_change_hidden',
                     'last_change_output', 'err_output', 'err_hidden'):
            assert np.array_equal(getattr(a, name), getattr(b, name)), name
        assert a.regression == b.regression
        assert a.learning_rate == b.learning_rate
        assert a.momentum == b.momentum

    def test_round_trip_file(self, trained, tmp_path):
        """Test that save then load restores every field exactly."""
        path = tmp_path / 'net.json'
        trained.save(path)
        loaded = Network.load(path)

        self.assert_same_state(trained, loaded)
        for x in XOR_INPUTS:
            assert np.array_equal(trained.forward(x), loaded.forward(x))

    def test_round_trip_string_path(self, trained, tmp_path):
        """Test that plain string paths are accepted."""
        path = str(tmp_path / 'net.json')
        trained.save(path)
        self.assert_same_state(trained, Network.load(path))

    def test_round_trip_file_object(self, trained):
        """Test saving to and loading from an in-memory byte sink."""
        buffer = io.BytesIO()
        trained.save(buffer)
        buffer.seek(0)
        self.assert_same_state(trained, Network.load(buffer))

    def test_saved_document_fields(self, trained):
        """Test that the encoding tags every field."""
        buffer = io.BytesIO()
        trained.save(buffer)
        document = json.loads(buffer.getvalue().decode('utf-8'))

        assert document['format_version'] == 1
        assert document['regression'] is True
        assert document['learning_rate'] == 0.1
        assert document['momentum'] == 0.3
        assert len(document['weight_hidden']) == 4
        assert len(document['weight_hidden'][0]) == 3

    def test_loaded_network_keeps_training(self, trained, tmp_path):
        """Test that a loaded network trains like the original."""
        path = tmp_path / 'net.json'
        trained.save(path)
        loaded = Network.load(path, rng=1)
        trained.rng = np.random.default_rng(1)

        assert trained.train(XOR_INPUTS, XOR_TARGETS, 5) == \
            loaded.train(XOR_INPUTS, XOR_TARGETS, 5)

    def test_load_missing_file(self, tmp_path):
        """Test that a missing source raises IOFailure."""
        with pytest.raises(IOFailure):
            Network.load(tmp_path / 'missing.json')

    def test_io_failure_is_os_error(self, tmp_path):
        """Test that IOFailure can be caught as OSError."""
        with pytest.raises(OSError):
            Network.load(tmp_path / 'missing.json')

    def test_save_to_directory_fails(self, trained, tmp_path):
        """Test that an unwritable sink raises IOFailure."""
        with pytest.raises(IOFailure):
            trained.save(tmp_path)

    def test_load_invalid_json(self):
        """Test that garbage bytes raise IOFailure."""
        with pytest.raises(IOFailure):
            Network.load(io.BytesIO(b'not json'))

    def test_load_wrong_version(self, trained):
        """Test that an unknown format version is rejected."""
        state = trained.to_state()
        document = {k: (v.tolist() if isinstance(v, np.ndarray) else v)
                    for k, v in state.items()}
        document['format_version'] = 99
        with pytest.raises(IOFailure):
            Network.load(io.BytesIO(json.dumps(document).encode('utf-8')))

    def test_load_inconsistent_shapes(self, trained):
        """Test that mismatched matrix shapes are rejected."""
        state = trained.to_state()
        state['weight_output'] = np.zeros((3, 3))
        with pytest.raises(IOFailure):
            Network.from_state(state)

    def test_load_missing_field(self, trained):
        """Test that a missing field is rejected."""
        state = trained.to_state()
        del state['momentum']
        with pytest.raises(IOFailure):
            Network.from_state(state)
