"""
Radar rollcalls: answer with a coordinate the server accepts as "on call".

Known points are tried one at a time. Each rejection that reports a
distance to the hidden trusted point becomes a trilateration sample; with
three or more, a Gauss–Newton least-squares fit on the sphere estimates the
trusted point and that estimate is submitted.

The fit's Jacobian uses a 1e-12 degree finite-difference step, far below
double-precision resolution at these magnitudes, so the whole solve runs in
mpmath at SOLVER_PRECISION_DPS significant digits.
"""

import json
import threading
from dataclasses import dataclass, field
from typing import Mapping, Optional

from mpmath import mp, mpf

from . import api
from .config import log
from .constants import (
    EARTH_RADIUS_M, MIN_RADAR_SAMPLES, SOLVER_MAX_ITER, SOLVER_PRECISION_DPS,
    SOLVER_STEP_DEG, SOLVER_TOLERANCE_DEG,
)
from .models import LocationSample, OutcomeKind, extract_distance


# ─── Least-squares solve ─────────────────────────────────────────

@dataclass(frozen=True)
class Estimate:
    longitude: float
    latitude: float
    rms: float
    iterations: int


def haversine(lon, lat, lon_i, lat_i, radius):
    """Great-circle distance in metres; arguments are mpf degrees."""
    deg = mp.pi / 180
    phi, phi_i = lat * deg, lat_i * deg
    d_phi = phi - phi_i
    d_lam = (lon - lon_i) * deg
    h = mp.sin(d_phi / 2) ** 2 + mp.cos(phi) * mp.cos(phi_i) * mp.sin(d_lam / 2) ** 2
    if h > 1:
        h = mpf(1)
    return 2 * radius * mp.asin(mp.sqrt(h))


def _residuals(lon, lat, points, radius):
    return [d - haversine(lon, lat, p_lon, p_lat, radius) for p_lon, p_lat, d in points]


def _jacobian(lon, lat, points, radius, step):
    """Forward-difference derivative of the model distance w.r.t. (lon, lat)."""
    base = _residuals(lon, lat, points, radius)
    shifted_lon = _residuals(lon + step, lat, points, radius)
    shifted_lat = _residuals(lon, lat + step, points, radius)
    return [
        (-(r_lon - r) / step, -(r_lat - r) / step)
        for r, r_lon, r_lat in zip(base, shifted_lon, shifted_lat)
    ]


def solve_location(samples, radius=EARTH_RADIUS_M, max_iter=SOLVER_MAX_ITER,
                   tolerance=SOLVER_TOLERANCE_DEG, step=SOLVER_STEP_DEG,
                   dps=SOLVER_PRECISION_DPS):
    """
    Estimate the point whose haversine distances best match the samples.

    Starts from the sample centroid and iterates Gauss–Newton on the 2×2
    normal equations until both updates drop below `tolerance` degrees.
    Raises ValueError with fewer than MIN_RADAR_SAMPLES valid samples, or
    when the geometry is degenerate (singular normal matrix).
    """
    valid = [s for s in samples if s.valid]
    if len(valid) < MIN_RADAR_SAMPLES:
        raise ValueError(f"need {MIN_RADAR_SAMPLES} valid samples, got {len(valid)}")

    with mp.workdps(dps):
        # str() keeps the shortest float repr, so inputs enter exactly as written
        points = [(mpf(str(s.longitude)), mpf(str(s.latitude)), mpf(str(s.reported_distance_m)))
                  for s in valid]
        radius = mpf(radius)
        tolerance = mpf(tolerance)
        step = mpf(step)

        lon = sum(p[0] for p in points) / len(points)
        lat = sum(p[1] for p in points) / len(points)

        iterations = 0
        for iterations in range(1, max_iter + 1):
            r = _residuals(lon, lat, points, radius)
            jac = _jacobian(lon, lat, points, radius, step)

            a = sum(j[0] * j[0] for j in jac)
            b = sum(j[0] * j[1] for j in jac)
            d = sum(j[1] * j[1] for j in jac)
            g0 = sum(j[0] * ri for j, ri in zip(jac, r))
            g1 = sum(j[1] * ri for j, ri in zip(jac, r))

            det = a * d - b * b
            if det == 0:
                raise ValueError("degenerate sample geometry")

            d_lon = (d * g0 - b * g1) / det
            d_lat = (a * g1 - b * g0) / det
            lon += d_lon
            lat += d_lat

            if abs(d_lon) < tolerance and abs(d_lat) < tolerance:
                break

        sq = sum(ri * ri for ri in _residuals(lon, lat, points, radius))
        rms = mp.sqrt(sq / len(points))
        return Estimate(float(lon), float(lat), float(rms), iterations)


# ─── Locator ─────────────────────────────────────────────────────

@dataclass
class RadarResult:
    rollcall_id: str
    success: bool
    point: Optional[str] = None
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    attempts: int = 0
    samples: list = field(default_factory=list)
    estimate: Optional[Estimate] = None
    aborted: bool = False


def _short(body):
    try:
        return json.dumps(body, ensure_ascii=False)[:300]
    except (TypeError, ValueError):
        return repr(body)[:300]


class _Aborted(Exception):
    """Auth failure or stop request; unwinds out of the attempt sequence."""


class RadarLocator:
    """Sequential radar solver for one account."""

    def __init__(self, client, logger, known_points: Mapping[str, tuple], preferred_point,
                 on_auth_expired=None, cancel_event=None):
        self._client = client
        self._logger = logger
        self._points = dict(known_points)
        self._preferred = preferred_point
        self._on_auth_expired = on_auth_expired
        self._cancel = cancel_event or threading.Event()

    def _attempt(self, result, longitude, latitude):
        if self._cancel.is_set():
            raise _Aborted("stopped")
        result.attempts += 1
        outcome = api.answer_radar(self._client, result.rollcall_id, longitude, latitude)
        if outcome.auth_expired:
            if self._on_auth_expired is not None:
                self._on_auth_expired(outcome.detail)
            raise _Aborted(outcome.detail)
        if outcome.kind is OutcomeKind.TRANSPORT_ERROR:
            log.info("Radar #%s attempt at (%s, %s) failed: %s",
                     result.rollcall_id, longitude, latitude, outcome.detail)
        return outcome

    def _record(self, result, name, coords, outcome):
        distance = extract_distance(outcome.body)
        if distance is not None:
            result.samples.append(LocationSample(name, coords[0], coords[1], distance))

    def _accept(self, result, name, longitude, latitude, message):
        result.success = True
        result.point = name
        result.longitude = longitude
        result.latitude = latitude
        self._logger.success(message)
        return result

    def locate(self, rollcall_id) -> RadarResult:
        result = RadarResult(rollcall_id=str(rollcall_id), success=False)
        try:
            return self._locate(result)
        except _Aborted as e:
            result.aborted = True
            self._logger.info(f"Radar rollcall #{rollcall_id} abandoned: {e}")
            return result

    def _locate(self, result):
        rid = result.rollcall_id
        preferred = self._points.get(self._preferred)

        # 1. Configured point first
        if preferred is not None:
            outcome = self._attempt(result, *preferred)
            if outcome.ok:
                return self._accept(result, self._preferred, *preferred,
                                    f"Radar #{rid} on call at configured point {self._preferred}: {_short(outcome.body)}")
            self._logger.info(f"Configured point {self._preferred} not accepted: {_short(outcome.body)}")
            self._record(result, self._preferred, preferred, outcome)

        # 2. Every other known point
        for name, coords in self._points.items():
            if name == self._preferred:
                continue
            self._logger.info(f"Radar #{rid}: trying point {name}")
            outcome = self._attempt(result, *coords)
            if outcome.ok:
                return self._accept(result, name, *coords,
                                    f"Radar #{rid} on call at point {name}")
            self._record(result, name, coords, outcome)

        # 3. Trilateration from the reported distances
        valid = [s for s in result.samples if s.valid]
        if len(valid) >= MIN_RADAR_SAMPLES:
            try:
                estimate = solve_location(valid)
            except ValueError as e:
                self._logger.warn(f"Radar #{rid}: location fit failed: {e}")
            else:
                result.estimate = estimate
                self._logger.info(
                    f"Radar #{rid}: fitted location ({estimate.longitude}, {estimate.latitude}) "
                    f"RMS={estimate.rms:.3f}m from {len(valid)} samples in {estimate.iterations} iterations"
                )
                outcome = self._attempt(result, estimate.longitude, estimate.latitude)
                if outcome.ok:
                    return self._accept(result, "estimate", estimate.longitude, estimate.latitude,
                                        f"Radar #{rid} on call at fitted location: {_short(outcome.body)}")
                self._logger.info(f"Radar #{rid}: fitted location rejected: {_short(outcome.body)}")
        else:
            self._logger.warn(
                f"Radar #{rid}: location fit skipped, only {len(valid)} distance samples"
            )

        # 4. Last resort: the configured point once more
        if preferred is not None:
            outcome = self._attempt(result, *preferred)
            if outcome.ok:
                return self._accept(result, self._preferred, *preferred,
                                    f"Radar #{rid} on call at configured point {self._preferred} (retry)")

        self._logger.error(f"Radar rollcall #{rid} failed after {result.attempts} attempts")
        return result
