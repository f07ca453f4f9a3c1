"""Predictive estimators feeding the risk score.

Two small models share one feature vector (features.FEATURE_NAMES):
  - LinearPredictor: next water level, trained by SGD on squared loss
  - RiskClassifier: feed-forward net (ReLU hidden, sigmoid output) mapping
    the window to a 0-1 severity, bucketed into low/moderate/high/extreme

An untrained estimator reports no signal. EstimatorEnsemble runs both in a
thread pool with a deadline; anything late or failing is a missing signal.
"""

import copy
import logging
import math
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta

import numpy as np

from floodwatch.config import settings
from floodwatch.schemas.risk import RiskLevel
from floodwatch.schemas.telemetry import Reading
from floodwatch.services.features import FEATURE_NAMES, Signals, as_utc, calculate_trend, feature_vector

logger = logging.getLogger(__name__)

N_FEATURES = len(FEATURE_NAMES)

# Peak level (ft) -> severity label for classifier training
SEVERITY_LABELS: tuple[tuple[float, float], ...] = (
    (2.0, 0.0),
    (4.0, 0.25),
    (6.0, 0.5),
    (8.0, 0.75),
)


class _Standardizer:
    """Per-feature z-scaling fitted on the training set."""

    def __init__(self, n_features: int):
        self.mean = np.zeros(n_features)
        self.scale = np.ones(n_features)

    def fit(self, X: np.ndarray) -> np.ndarray:
        self.mean = X.mean(axis=0)
        scale = X.std(axis=0)
        scale[scale == 0] = 1.0
        self.scale = scale
        return self.transform(X)

    def transform(self, X: np.ndarray) -> np.ndarray:
        return (X - self.mean) / self.scale


class LinearPredictor:
    def __init__(self, n_features: int = N_FEATURES, learning_rate: float = 0.01,
                 iterations: int = 1000, seed: int | None = 0):
        rng = np.random.default_rng(seed)
        self.weights = rng.random(n_features) * 0.01
        self.bias = 0.0
        self.learning_rate = learning_rate
        self.iterations = iterations
        self.trained = False
        self._rng = rng
        self._scaler = _Standardizer(n_features)

    def predict(self, features: list[float]) -> float:
        x = self._scaler.transform(np.asarray(features, dtype=float))
        return float(self.weights @ x + self.bias)

    def loss(self, X: np.ndarray, y: np.ndarray) -> float:
        """Mean squared error."""
        preds = self._scaler.transform(np.asarray(X, dtype=float)) @ self.weights + self.bias
        return float(np.mean((preds - np.asarray(y, dtype=float)) ** 2))

    def fit(self, X: np.ndarray, y: np.ndarray) -> "LinearPredictor":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        if len(X) == 0:
            return self
        X = self._scaler.fit(X)

        lr = self.learning_rate
        for it in range(self.iterations):
            for i in self._rng.permutation(len(X)):
                error = X[i] @ self.weights + self.bias - y[i]
                self.weights -= lr * 2 * error * X[i]
                self.bias -= lr * 2 * error
            if it % 100 == 0:
                lr *= 0.95
            if not np.all(np.isfinite(self.weights)):
                logger.warning("Linear predictor diverged at iteration %d, resetting", it)
                self.weights = np.zeros_like(self.weights)
                self.bias = 0.0
                self.trained = False
                return self

        self.trained = True
        return self


class RiskClassifier:
    def __init__(self, architecture: tuple[int, ...] = (N_FEATURES, 10, 5, 1),
                 learning_rate: float = 0.01, seed: int | None = 0):
        rng = np.random.default_rng(seed)
        self.learning_rate = learning_rate
        self.weights = [
            (rng.random((architecture[i], architecture[i - 1])) - 0.5) * math.sqrt(2 / architecture[i - 1])
            for i in range(1, len(architecture))
        ]
        self.biases = [np.zeros(architecture[i]) for i in range(1, len(architecture))]
        self.trained = False
        self._scaler = _Standardizer(architecture[0])

    def _forward(self, x: np.ndarray) -> list[np.ndarray]:
        activations = [x]
        for layer, (w, b) in enumerate(zip(self.weights, self.biases)):
            z = w @ activations[-1] + b
            if layer < len(self.weights) - 1:
                activations.append(np.maximum(0.0, z))
            else:
                activations.append(1 / (1 + np.exp(-z)))
        return activations

    def severity(self, features: list[float]) -> float:
        x = self._scaler.transform(np.asarray(features, dtype=float))
        return float(self._forward(x)[-1][0])

    def classify(self, features: list[float]) -> tuple[RiskLevel, float]:
        score = self.severity(features)
        if score < 0.25:
            level = RiskLevel.LOW
        elif score < 0.5:
            level = RiskLevel.MODERATE
        elif score < 0.75:
            level = RiskLevel.HIGH
        else:
            level = RiskLevel.EXTREME
        return level, abs(score - 0.5) * 2

    def fit(self, X: np.ndarray, y: np.ndarray, epochs: int = 100) -> "RiskClassifier":
        X = np.asarray(X, dtype=float)
        y = np.asarray(y, dtype=float)
        if len(X) == 0:
            return self
        X = self._scaler.fit(X)

        for _ in range(epochs):
            for x, target in zip(X, y):
                activations = self._forward(x)
                # sigmoid + cross-entropy: output delta is (prediction - target)
                delta = activations[-1] - target
                for layer in reversed(range(len(self.weights))):
                    grad_w = np.outer(delta, activations[layer])
                    grad_b = delta
                    if layer > 0:
                        delta = (self.weights[layer].T @ delta) * (activations[layer] > 0)
                    self.weights[layer] -= self.learning_rate * grad_w
                    self.biases[layer] -= self.learning_rate * grad_b

        self.trained = True
        return self


def severity_label(peak_level: float) -> float:
    for ceiling, label in SEVERITY_LABELS:
        if peak_level < ceiling:
            return label
    return 1.0


def _window_signals(window: list[Reading]) -> Signals:
    return Signals(
        current_level=window[-1].water_level_ft,
        trend=calculate_trend(window),
        reading_count=len(window),
    )


def build_level_dataset(readings: list[Reading], window_size: int = 6) -> tuple[np.ndarray, np.ndarray]:
    """Sliding windows of `window_size` readings labelled with the next level."""
    X, y = [], []
    for i in range(window_size, len(readings)):
        window = readings[i - window_size:i]
        X.append(feature_vector(window, _window_signals(window)))
        y.append(readings[i].water_level_ft)
    return np.asarray(X, dtype=float).reshape(-1, N_FEATURES), np.asarray(y, dtype=float)


def build_severity_dataset(readings: list[Reading], window_hours: float = 12.0) -> tuple[np.ndarray, np.ndarray]:
    """Consecutive time windows labelled by their peak level."""
    windows: list[list[Reading]] = []
    current: list[Reading] = []
    start = None
    for reading in readings:
        at = as_utc(reading.timestamp)
        if start is not None and at - start <= timedelta(hours=window_hours):
            current.append(reading)
        else:
            if current:
                windows.append(current)
            current, start = [reading], at
    if current:
        windows.append(current)

    X = [feature_vector(w, _window_signals(w)) for w in windows]
    y = [severity_label(max(r.water_level_ft for r in w)) for w in windows]
    return np.asarray(X, dtype=float).reshape(-1, N_FEATURES), np.asarray(y, dtype=float)


@dataclass(frozen=True)
class TrainingReport:
    readings: int
    level_samples: int
    severity_samples: int
    predictor_trained: bool
    classifier_trained: bool
    # in-sample mean squared error of the level predictor
    predictor_loss: float | None = None


@dataclass(frozen=True)
class EnsembleOutput:
    predicted_level: float | None = None
    risk_level: RiskLevel | None = None
    risk_confidence: float | None = None


class EstimatorEnsemble:
    def __init__(self, predictor: LinearPredictor | None = None, classifier: RiskClassifier | None = None,
                 max_workers: int = 2):
        self.predictor = predictor or LinearPredictor()
        self.classifier = classifier or RiskClassifier()
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="estimator")

    def fit_history(self, readings: list[Reading]) -> TrainingReport:
        """Train both estimators on a historical series (sorted by timestamp).

        Fitting happens on copies that replace the live models only once
        trained, so predictions running meanwhile see either the old or the
        new model, never a half-fitted one.
        """
        predictor = copy.deepcopy(self.predictor)
        classifier = copy.deepcopy(self.classifier)

        predictor_loss = None
        X, y = build_level_dataset(readings)
        if len(X):
            predictor.fit(X, y)
            if predictor.trained:
                predictor_loss = predictor.loss(X, y)
        level_samples = len(X)
        X, y = build_severity_dataset(readings)
        if len(X):
            classifier.fit(X, y)
        severity_samples = len(X)

        self.predictor = predictor
        self.classifier = classifier
        logger.info(
            "Estimators trained on %d readings (predictor=%s, classifier=%s, loss=%s)",
            len(readings), predictor.trained, classifier.trained, predictor_loss,
        )
        return TrainingReport(
            readings=len(readings),
            level_samples=level_samples,
            severity_samples=severity_samples,
            predictor_trained=predictor.trained,
            classifier_trained=classifier.trained,
            predictor_loss=predictor_loss,
        )

    def predict(self, features: list[float], timeout: float | None = None) -> EnsembleOutput:
        timeout = timeout if timeout is not None else settings.estimator_timeout_s

        predictor, classifier = self.predictor, self.classifier
        futures = {}
        if predictor.trained:
            futures["level"] = self._executor.submit(predictor.predict, features)
        if classifier.trained:
            futures["risk"] = self._executor.submit(classifier.classify, features)
        if not futures:
            return EnsembleOutput()

        done, not_done = wait(futures.values(), timeout=timeout)
        for fut in not_done:
            fut.cancel()
        if not_done:
            logger.warning("%d estimator(s) missed the %.2fs deadline", len(not_done), timeout)

        predicted_level = risk_level = risk_confidence = None
        level_fut = futures.get("level")
        if level_fut in done and level_fut.exception() is None:
            value = level_fut.result()
            if math.isfinite(value):
                predicted_level = value
        risk_fut = futures.get("risk")
        if risk_fut in done and risk_fut.exception() is None:
            risk_level, risk_confidence = risk_fut.result()

        for name, fut in futures.items():
            if fut in done and fut.exception() is not None:
                logger.warning("Estimator %s failed: %s", name, fut.exception())

        return EnsembleOutput(
            predicted_level=predicted_level,
            risk_level=risk_level,
            risk_confidence=risk_confidence,
        )

    def shutdown(self):
        self._executor.shutdown(wait=False, cancel_futures=True)
