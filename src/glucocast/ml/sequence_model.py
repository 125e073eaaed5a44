"""
Sequence Model
Single-layer LSTM trained with full backpropagation through time.

Plain numpy routines over fixed-size vectors: gates f, i, c~, o with input
weights W (hidden x input), recurrent weights U (hidden x hidden) and bias b,
followed by a linear readout y = Why h + by.
"""
import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


GATES = ("f", "i", "c", "o")


def _sigmoid(x: np.ndarray) -> np.ndarray:
    return 1.0 / (1.0 + np.exp(-x))


@dataclass
class ForwardCache:
    """Per-timestep activations kept for the backward pass."""
    outputs: np.ndarray  # (T, output)
    gates: List[Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]]
    h: np.ndarray  # (T + 1, hidden)
    c: np.ndarray  # (T + 1, hidden)


class SequenceModel:
    """
    Small recurrent network for near-term glucose refinement.

    Inputs and targets are normalized glucose values. Weights use a
    Xavier-like uniform init scaled by sqrt(2 / (input + hidden)), biases
    start at zero. Updates are plain SGD with element-wise clipping.
    """

    def __init__(
        self,
        input_size: int = 1,
        hidden_size: int = 8,
        output_size: int = 1,
        learning_rate: float = 0.01,
        clip: float = 1.0,
        seed: Optional[int] = None,
    ):
        self.input_size = input_size
        self.hidden_size = hidden_size
        self.output_size = output_size
        self.learning_rate = learning_rate
        self.clip = clip
        self.is_trained = False
        self._rng = np.random.default_rng(seed)
        self._init_weights()

    def _init_weights(self) -> None:
        scale = np.sqrt(2.0 / (self.input_size + self.hidden_size))
        h, i, o = self.hidden_size, self.input_size, self.output_size

        self.W = {g: self._uniform((h, i), scale) for g in GATES}
        self.U = {g: self._uniform((h, h), scale) for g in GATES}
        self.b = {g: np.zeros(h) for g in GATES}
        self.Why = self._uniform((o, h), scale)
        self.by = np.zeros(o)

    def _uniform(self, shape: Tuple[int, int], scale: float) -> np.ndarray:
        return self._rng.uniform(-1.0, 1.0, size=shape) * scale

    # ==================== Forward ====================

    def _gates(self, x: np.ndarray, h_prev: np.ndarray):
        f = _sigmoid(self.W["f"] @ x + self.U["f"] @ h_prev + self.b["f"])
        i = _sigmoid(self.W["i"] @ x + self.U["i"] @ h_prev + self.b["i"])
        c_bar = np.tanh(self.W["c"] @ x + self.U["c"] @ h_prev + self.b["c"])
        o = _sigmoid(self.W["o"] @ x + self.U["o"] @ h_prev + self.b["o"])
        return f, i, c_bar, o

    def forward(self, inputs: np.ndarray) -> ForwardCache:
        """
        Run the network over a sequence.

        Args:
            inputs: Array of shape (T, input_size)

        Returns:
            ForwardCache with outputs of shape (T, output_size)
        """
        inputs = np.asarray(inputs, dtype=float).reshape(-1, self.input_size)
        steps = len(inputs)
        h = np.zeros((steps + 1, self.hidden_size))
        c = np.zeros((steps + 1, self.hidden_size))
        outputs = np.zeros((steps, self.output_size))
        gates = []

        for t in range(steps):
            f, i, c_bar, o = self._gates(inputs[t], h[t])
            c[t + 1] = f * c[t] + i * c_bar
            h[t + 1] = o * np.tanh(c[t + 1])
            outputs[t] = self.Why @ h[t + 1] + self.by
            gates.append((f, i, c_bar, o))

        return ForwardCache(outputs=outputs, gates=gates, h=h, c=c)

    # ==================== Training ====================

    def train(self, inputs: np.ndarray, targets: np.ndarray) -> float:
        """
        One BPTT update over a single sequence.

        Args:
            inputs: Array of shape (T, input_size)
            targets: Array of shape (T, output_size)

        Returns:
            Sum of squared errors divided by T
        """
        inputs = np.asarray(inputs, dtype=float).reshape(-1, self.input_size)
        targets = np.asarray(targets, dtype=float).reshape(-1, self.output_size)
        steps = len(inputs)
        if steps == 0:
            return 0.0

        cache = self.forward(inputs)
        dW = {g: np.zeros_like(self.W[g]) for g in GATES}
        dU = {g: np.zeros_like(self.U[g]) for g in GATES}
        db = {g: np.zeros_like(self.b[g]) for g in GATES}
        dWhy = np.zeros_like(self.Why)
        dby = np.zeros_like(self.by)

        dh_next = np.zeros(self.hidden_size)
        dc_next = np.zeros(self.hidden_size)
        loss = 0.0

        for t in reversed(range(steps)):
            dy = cache.outputs[t] - targets[t]
            loss += float(dy @ dy)

            dby += dy
            dWhy += np.outer(dy, cache.h[t + 1])

            dh = self.Why.T @ dy + dh_next
            f, i, c_bar, o = cache.gates[t]
            tanh_c = np.tanh(cache.c[t + 1])

            dc = dh * o * (1 - tanh_c * tanh_c) + dc_next
            d_gate = {
                "f": dc * cache.c[t] * f * (1 - f),
                "i": dc * c_bar * i * (1 - i),
                "c": dc * i * (1 - c_bar * c_bar),
                "o": dh * tanh_c * o * (1 - o),
            }

            x, h_prev = inputs[t], cache.h[t]
            for g in GATES:
                db[g] += d_gate[g]
                dW[g] += np.outer(d_gate[g], x)
                dU[g] += np.outer(d_gate[g], h_prev)

            dc_next = dc * f
            dh_next = sum(self.U[g].T @ d_gate[g] for g in GATES)

        for g in GATES:
            self._apply(self.W[g], dW[g])
            self._apply(self.U[g], dU[g])
            self._apply(self.b[g], db[g])
        self._apply(self.Why, dWhy)
        self._apply(self.by, dby)

        return loss / steps

    def _apply(self, weights: np.ndarray, grads: np.ndarray) -> None:
        weights -= self.learning_rate * np.clip(grads, -self.clip, self.clip)

    def fit(self, sequences: Sequence[Sequence[float]], epochs: int = 3) -> float:
        """
        Train next-value prediction over many sequences.

        Each sequence s is trained with inputs s[:-1] and targets s[1:].

        Returns:
            Mean loss of the final epoch
        """
        usable = [np.asarray(s, dtype=float) for s in sequences if len(s) >= 2]
        if not usable:
            logger.info("No sequences long enough to train the sequence model")
            return 0.0

        mean_loss = 0.0
        for epoch in range(epochs):
            losses = [self.train(s[:-1], s[1:]) for s in usable]
            mean_loss = float(np.mean(losses))
            logger.debug(f"Sequence model epoch {epoch + 1}/{epochs}: loss={mean_loss:.5f}")

        if np.isfinite(mean_loss):
            self.is_trained = True
        else:
            logger.warning("Sequence model diverged; discarding weights")
            self._init_weights()
            self.is_trained = False
        logger.info(f"Sequence model trained on {len(usable)} sequences (loss={mean_loss:.5f})")
        return mean_loss

    # ==================== Inference ====================

    def forecast(self, history: Sequence[float], steps: int) -> List[float]:
        """
        Autoregressive forecast of `steps` future normalized values.

        The network is primed with `history`; each prediction is fed back as
        the next input.
        """
        if len(history) == 0 or steps <= 0:
            return []

        history_arr = np.asarray(history, dtype=float).reshape(-1, self.input_size)
        cache = self.forward(history_arr)
        h, c = cache.h[-1].copy(), cache.c[-1].copy()
        y = cache.outputs[-1]

        predictions = []
        for _ in range(steps):
            value = float(np.clip(y[0], -1.0, 1.0))
            predictions.append(value)
            f, i, c_bar, o = self._gates(np.full(self.input_size, value), h)
            c = f * c + i * c_bar
            h = o * np.tanh(c)
            y = self.Why @ h + self.by

        return predictions
