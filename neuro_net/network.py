"""
network.py
~~~~~~~~~~

A feed-forward neural network with a single hidden layer, trained by
stochastic backpropagation with momentum.

Samples are either dense vectors or sparse ``{index: value}`` mappings.
Sparse samples overlay the input layer: indices a sample does not list
keep whatever value an earlier sample left there, and only the listed
columns (plus the input bias column) take part in the hidden sums and the
hidden weight update.

Both layers carry a bias unit fixed at 1.0 in their last slot. The output
layer applies the sigmoid unless the network is in regression mode, in
which case outputs are plain weighted sums.
"""

import logging
import operator
import time
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from neuro_net import config
from neuro_net import serialization
from neuro_net.exceptions import InputSizeMismatch, IOFailure, OutputSizeMismatch
from neuro_net.matrix import new_matrix, random_matrix

logger = logging.getLogger(__name__)

SparseInput = Mapping[int, float]
ProgressCallback = Callable[[Dict[str, Any]], None]

_VECTOR_FIELDS = (
    'input_layer', 'hidden_layer', 'output_layer', 'err_output', 'err_hidden'
)
_MATRIX_FIELDS = (
    'weight_hidden', 'weight_output', 'last_change_hidden', 'last_change_output'
)


def sigmoid(z):
    """The sigmoid function, evaluated without overflow for large ``|z|``."""
    return np.exp(-np.logaddexp(0.0, -z))


def dsigmoid(y):
    """
    Derivative of the sigmoid expressed through its output.

    ``y`` must already be a sigmoid value, not a raw pre-activation.
    """
    return y * (1.0 - y)


def random_permutation(n: int, rng: np.random.Generator) -> List[int]:
    """
    Shuffle ``range(n)`` in place, Fisher-Yates style.

    Position ``i`` is swapped with a position drawn uniformly from
    ``[i, n - 1]``.
    """
    order = list(range(n))
    for i in range(n):
        j = i + int(rng.random() * (n - i))
        order[i], order[j] = order[j], order[i]
    return order


def _should_report_epoch(epoch: int, epochs: int) -> bool:
    # Roughly ten reports over a long run, every epoch for short ones
    return epochs < 10 or (epoch + 1) % (epochs // 10) == 0


class Network:
    """
    Input => Hidden (sigmoid) => Output (sigmoid or identity).

    Attributes:
        input_layer: Input activations, bias unit last
        hidden_layer: Hidden activations, bias unit last
        output_layer: Output activations
        weight_hidden: ``hidden_size x (input_size + 1)`` input => hidden
        weight_output: ``output_size x (hidden_size + 1)`` hidden => output
        last_change_hidden: Previous update applied to ``weight_hidden``
        last_change_output: Previous update applied to ``weight_output``
        err_output: Output residuals of the last backward step
        err_hidden: Back-propagated hidden errors of the last backward step
        regression: If True the output layer skips the sigmoid
        learning_rate: Step size of the gradient term
        momentum: Fraction of the previous update reapplied each step
        rng: Random source for initialisation and shuffling
    """

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        output_size: int,
        regression: bool = False,
        learning_rate: float = config.DEFAULT_LEARNING_RATE,
        momentum: float = config.DEFAULT_MOMENTUM,
        rng=None
    ):
        """
        Build a network with randomly initialised weights.

        Args:
            input_size: Number of input variables
            hidden_size: Number of hidden units
            output_size: Number of output variables
            regression: Use identity instead of sigmoid on the output layer
            learning_rate: Gradient step size
            momentum: Momentum coefficient
            rng: Seed, ``numpy.random.Generator`` or None for fresh entropy

        Raises:
            ValueError: If any layer size is not a positive integer
        """
        for name, size in (('input_size', input_size),
                           ('hidden_size', hidden_size),
                           ('output_size', output_size)):
            if not isinstance(size, (int, np.integer)) or size < 1:
                raise ValueError(f"{name} must be a positive integer, got {size!r}")

        self.rng = np.random.default_rng(rng)

        self.regression = bool(regression)
        self.learning_rate = float(learning_rate)
        self.momentum = float(momentum)

        self.input_layer = np.zeros(input_size + 1)
        self.hidden_layer = np.zeros(hidden_size + 1)
        self.output_layer = np.zeros(output_size)
        self.input_layer[-1] = 1.0
        self.hidden_layer[-1] = 1.0

        self.err_output = np.zeros(output_size)
        self.err_hidden = np.zeros(hidden_size)

        self.weight_hidden = random_matrix(
            hidden_size, input_size + 1,
            config.WEIGHT_INIT_LOW, config.WEIGHT_INIT_HIGH, self.rng
        )
        self.weight_output = random_matrix(
            output_size, hidden_size + 1,
            config.WEIGHT_INIT_LOW, config.WEIGHT_INIT_HIGH, self.rng
        )

        self.last_change_hidden = new_matrix(hidden_size, input_size + 1)
        self.last_change_output = new_matrix(output_size, hidden_size + 1)

    @classmethod
    def default(
        cls,
        input_size: int,
        hidden_size: int,
        output_size: int,
        regression: bool = False,
        rng=None
    ) -> 'Network':
        """Build a network with the default learning rate and momentum."""
        return cls(
            input_size, hidden_size, output_size, regression,
            config.DEFAULT_LEARNING_RATE, config.DEFAULT_MOMENTUM, rng
        )

    def __repr__(self):
        mode = 'regression' if self.regression else 'sigmoid'
        return "<Network sizes=%s, output=%s>" % (self.sizes, mode)

    @property
    def input_size(self) -> int:
        return len(self.input_layer) - 1

    @property
    def hidden_size(self) -> int:
        return len(self.hidden_layer) - 1

    @property
    def output_size(self) -> int:
        return len(self.output_layer)

    @property
    def sizes(self) -> List[int]:
        """Layer sizes ``[input, hidden, output]``, bias units excluded."""
        return [self.input_size, self.hidden_size, self.output_size]

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _input_vector(self, inputs) -> np.ndarray:
        x = np.asarray(inputs, dtype=np.float64)
        if x.ndim != 1:
            raise InputSizeMismatch(self.input_size, x.shape)
        if len(x) != self.input_size:
            raise InputSizeMismatch(self.input_size, len(x))
        return x

    def _target_vector(self, target) -> np.ndarray:
        t = np.asarray(target, dtype=np.float64)
        if t.ndim != 1:
            raise OutputSizeMismatch(self.output_size, t.shape)
        if len(t) != self.output_size:
            raise OutputSizeMismatch(self.output_size, len(t))
        return t

    def _sparse_entries(self, inputs: SparseInput) -> Tuple[np.ndarray, np.ndarray]:
        """Validate a sparse sample, returning its sorted indices and values."""
        if not isinstance(inputs, Mapping):
            raise TypeError(
                f"sparse input must be a mapping, got {type(inputs).__name__}"
            )
        entries = []
        for key, value in inputs.items():
            index = operator.index(key)
            if not 0 <= index < self.input_size:
                raise InputSizeMismatch(
                    self.input_size, index,
                    f"input index {index} out of range for "
                    f"{self.input_size} input variables"
                )
            entries.append((index, float(value)))
        entries.sort()

        indices = np.array([index for index, _ in entries], dtype=np.intp)
        values = np.array([value for _, value in entries], dtype=np.float64)
        return indices, values

    def validate_sample(self, inputs, target) -> None:
        """
        Check one sample against the layer sizes without touching any state.

        ``inputs`` may be a dense vector or a sparse mapping.

        Raises:
            InputSizeMismatch: If the input does not fit the input layer
            OutputSizeMismatch: If the target does not fit the output layer
        """
        if isinstance(inputs, Mapping):
            self._sparse_entries(inputs)
        else:
            self._input_vector(inputs)
        self._target_vector(target)

    def _with_bias_column(self, indices: np.ndarray) -> np.ndarray:
        return np.append(indices, self.input_size)

    # ------------------------------------------------------------------
    # Forward pass
    # ------------------------------------------------------------------

    def forward(self, inputs: Sequence[float]) -> np.ndarray:
        """
        Propagate a dense input vector through the network.

        Args:
            inputs: ``input_size`` feature values

        Returns:
            np.ndarray: Copy of the output layer

        Raises:
            InputSizeMismatch: If the vector length is not ``input_size``
        """
        x = self._input_vector(inputs)
        self.input_layer[:-1] = x
        self.input_layer[-1] = 1.0
        self._propagate()
        return self.output_layer.copy()

    def forward_map(self, inputs: SparseInput) -> np.ndarray:
        """
        Propagate a sparse ``{index: value}`` sample through the network.

        Listed indices overwrite the input layer; unlisted ones keep their
        previous value but do not contribute to the hidden sums.

        Raises:
            InputSizeMismatch: If an index lies outside ``[0, input_size)``
        """
        indices, values = self._sparse_entries(inputs)
        self.input_layer[indices] = values
        self.input_layer[-1] = 1.0
        self._propagate(self._with_bias_column(indices))
        return self.output_layer.copy()

    def _propagate(self, columns: Optional[np.ndarray] = None) -> None:
        """Recompute hidden and output activations from the input layer."""
        if columns is None:
            sums = self.weight_hidden @ self.input_layer
        else:
            sums = self.weight_hidden[:, columns] @ self.input_layer[columns]
        self.hidden_layer[:-1] = sigmoid(sums)
        self.hidden_layer[-1] = 1.0

        sums = self.weight_output @ self.hidden_layer
        if self.regression:
            self.output_layer[:] = sums
        else:
            self.output_layer[:] = sigmoid(sums)

    # ------------------------------------------------------------------
    # Backward pass
    # ------------------------------------------------------------------

    def backward(self, target: Sequence[float]) -> None:
        """
        Back-propagate the error against ``target`` and update all weights.

        Must follow a :meth:`forward` call for the same sample.

        Raises:
            OutputSizeMismatch: If the target length is not ``output_size``
        """
        t = self._target_vector(target)
        self._backpropagate(t)

    def backward_map(self, target: Sequence[float], inputs: SparseInput) -> None:
        """
        Sparse counterpart of :meth:`backward`.

        Only the hidden weight columns listed in ``inputs`` (and the input
        bias column) are updated. Must follow :meth:`forward_map` for the
        same sample.
        """
        t = self._target_vector(target)
        indices, _ = self._sparse_entries(inputs)
        self._backpropagate(t, self._with_bias_column(indices))

    def _backpropagate(
        self,
        target: np.ndarray,
        columns: Optional[np.ndarray] = None
    ) -> None:
        self.err_output[:] = self.output_layer - target

        if self.regression:
            output_delta = self.err_output.copy()
        else:
            output_delta = self.err_output * dsigmoid(self.output_layer)

        # Hidden errors use the output weights before they are updated.
        # The hidden bias unit has no incoming weights, so its column is skipped.
        self.err_hidden[:] = self.weight_output[:, :-1].T @ output_delta

        change = (self.learning_rate * np.outer(output_delta, self.hidden_layer)
                  + self.momentum * self.last_change_output)
        self.weight_output -= change
        self.last_change_output[:] = change

        # dsigmoid applies here in regression mode too
        hidden_delta = self.err_hidden * dsigmoid(self.hidden_layer[:-1])

        if columns is None:
            change = (self.learning_rate * np.outer(hidden_delta, self.input_layer)
                      + self.momentum * self.last_change_hidden)
            self.weight_hidden -= change
            self.last_change_hidden[:] = change
        else:
            change = (self.learning_rate
                      * np.outer(hidden_delta, self.input_layer[columns])
                      + self.momentum * self.last_change_hidden[:, columns])
            self.weight_hidden[:, columns] -= change
            self.last_change_hidden[:, columns] = change

    def calc_error(self, target: Sequence[float]) -> float:
        """
        Half squared error between the current output layer and ``target``.

        Reads only the output layer, so it can be called after any forward
        pass.
        """
        t = self._target_vector(target)
        diff = self.output_layer - t
        return float(0.5 * np.dot(diff, diff))

    # ------------------------------------------------------------------
    # Training
    # ------------------------------------------------------------------

    def train(
        self,
        inputs: Sequence[Sequence[float]],
        targets: Sequence[Sequence[float]],
        epochs: int,
        callback: Optional[ProgressCallback] = None,
        yield_func: Optional[Callable[[], None]] = None,
        progress_interval: int = config.DEFAULT_PROGRESS_INTERVAL
    ) -> List[float]:
        """
        Train on dense samples with stochastic backpropagation.

        Args:
            inputs: Dense input vectors
            targets: Target vectors, one per input
            epochs: Number of passes over the shuffled samples
            callback: Receives ``progress`` events every
                ``progress_interval`` samples and an ``epoch`` event after
                every epoch
            yield_func: Called alongside the callback, e.g. to let other
                green threads run
            progress_interval: Samples between progress events

        Returns:
            list: Mean squared error of every epoch

        Raises:
            InputSizeMismatch: If an input vector has the wrong length
            OutputSizeMismatch: If a target vector has the wrong length
            ValueError: If the sample collections are empty or of unequal
                length
        """
        self._check_training_set(inputs, targets, epochs)
        self._input_vector(inputs[0])
        self._target_vector(targets[0])

        def step(sample, target):
            self.forward(sample)
            self.backward(target)

        return self._run_epochs(
            inputs, targets, epochs, step,
            callback, yield_func, progress_interval
        )

    def train_map(
        self,
        inputs: Sequence[SparseInput],
        targets: Sequence[Sequence[float]],
        epochs: int,
        callback: Optional[ProgressCallback] = None,
        yield_func: Optional[Callable[[], None]] = None,
        progress_interval: int = config.DEFAULT_PROGRESS_INTERVAL
    ) -> List[float]:
        """Sparse counterpart of :meth:`train`; samples are index maps."""
        self._check_training_set(inputs, targets, epochs)
        self.validate_sample(inputs[0], targets[0])

        def step(sample, target):
            self.forward_map(sample)
            self.backward_map(target, sample)

        return self._run_epochs(
            inputs, targets, epochs, step,
            callback, yield_func, progress_interval
        )

    @staticmethod
    def _check_training_set(inputs, targets, epochs) -> None:
        if len(inputs) != len(targets):
            raise ValueError(
                f"got {len(inputs)} input samples but {len(targets)} targets"
            )
        if len(inputs) == 0:
            raise ValueError("training set is empty")
        if not isinstance(epochs, (int, np.integer)) or epochs < 0:
            raise ValueError(f"epochs must be a non-negative integer, got {epochs!r}")

    def _run_epochs(
        self,
        inputs,
        targets,
        epochs: int,
        step: Callable[[Any, Any], None],
        callback: Optional[ProgressCallback],
        yield_func: Optional[Callable[[], None]],
        progress_interval: int
    ) -> List[float]:
        n = len(inputs)
        history = []
        start_time = time.time()

        for epoch in range(epochs):
            order = random_permutation(n, self.rng)
            total_error = 0.0

            for count, index in enumerate(order, start=1):
                step(inputs[index], targets[index])
                total_error += self.calc_error(targets[index])

                if progress_interval > 0 and count % progress_interval == 0:
                    progress = count * 100.0 / n
                    logger.debug(
                        f"Epoch {epoch + 1}/{epochs} progress {progress:.2f}%"
                    )
                    if callback is not None:
                        callback({
                            'event': 'progress',
                            'epoch': epoch + 1,
                            'total_epochs': epochs,
                            'sample': count,
                            'total_samples': n,
                            'progress': progress
                        })
                    if yield_func is not None:
                        yield_func()

            mse = total_error / n
            history.append(mse)

            if _should_report_epoch(epoch, epochs):
                logger.info(f"Epoch {epoch + 1}/{epochs} MSE: {mse:.5f}")

            if callback is not None:
                callback({
                    'event': 'epoch',
                    'epoch': epoch + 1,
                    'total_epochs': epochs,
                    'mse': mse,
                    'elapsed_time': time.time() - start_time
                })
            if yield_func is not None:
                yield_func()

        logger.info(
            f"Training done: {epochs} epoch(s) over {n} sample(s) "
            f"in {time.time() - start_time:.2f}s"
        )
        return history

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_state(self) -> Dict[str, Any]:
        """Every field of the network as a plain dictionary."""
        state = {name: getattr(self, name) for name in _VECTOR_FIELDS + _MATRIX_FIELDS}
        state['regression'] = self.regression
        state['learning_rate'] = self.learning_rate
        state['momentum'] = self.momentum
        return state

    @classmethod
    def from_state(cls, state: Dict[str, Any], rng=None) -> 'Network':
        """
        Rebuild a network from :meth:`to_state` output.

        Raises:
            IOFailure: If fields are missing or their shapes disagree
        """
        try:
            arrays = {
                name: np.array(state[name], dtype=np.float64)
                for name in _VECTOR_FIELDS + _MATRIX_FIELDS
            }
            regression = state['regression']
            learning_rate = float(state['learning_rate'])
            momentum = float(state['momentum'])
        except (KeyError, TypeError, ValueError) as e:
            raise IOFailure(f"malformed network state: {e!r}") from e

        if not isinstance(regression, bool):
            raise IOFailure("malformed network state: 'regression' must be a boolean")

        for name in _VECTOR_FIELDS:
            if arrays[name].ndim != 1:
                raise IOFailure(f"malformed network state: '{name}' must be a vector")

        n_input = len(arrays['input_layer'])
        n_hidden = len(arrays['hidden_layer'])
        n_output = len(arrays['output_layer'])
        if n_input < 2 or n_hidden < 2 or n_output < 1:
            raise IOFailure("malformed network state: layers are too small")

        expected = {
            'err_output': (n_output,),
            'err_hidden': (n_hidden - 1,),
            'weight_hidden': (n_hidden - 1, n_input),
            'weight_output': (n_output, n_hidden),
            'last_change_hidden': (n_hidden - 1, n_input),
            'last_change_output': (n_output, n_hidden),
        }
        for name, shape in expected.items():
            if arrays[name].shape != shape:
                raise IOFailure(
                    f"malformed network state: '{name}' has shape "
                    f"{arrays[name].shape}, expected {shape}"
                )

        net = cls.__new__(cls)
        net.rng = np.random.default_rng(rng)
        net.regression = regression
        net.learning_rate = learning_rate
        net.momentum = momentum
        for name, array in arrays.items():
            setattr(net, name, array)
        return net

    def save(self, sink: serialization.Sink) -> None:
        """
        Write the complete network state to a path or binary file object.

        Raises:
            IOFailure: If the sink cannot be written
        """
        serialization.write_state(self.to_state(), sink)
        logger.debug(f"Saved network {self.sizes}")

    @classmethod
    def load(cls, source: serialization.Sink, rng=None) -> 'Network':
        """
        Read a network written by :meth:`save`.

        Args:
            source: Path or binary file object
            rng: Random source for further training of the loaded network

        Raises:
            IOFailure: If the source cannot be read or decoded
        """
        net = cls.from_state(serialization.read_state(source), rng=rng)
        logger.debug(f"Loaded network {net.sizes}")
        return net
