import logging
import re

import numpy as np
import pandas as pd
from scipy.stats import norm

logger = logging.getLogger(__name__)

BAND_NAMES = ('minus_two_sigma', 'minus_one_sigma', 'median', 'plus_one_sigma', 'plus_two_sigma')

# Median and +/- 1, 2 sigma under a normal ensemble
DEFAULT_PROBS = (0.0227, 0.1587, 0.5, 0.8413, 0.9773)
# Outer levels at 5.27% / 94.73%
ORIGINAL_PROBS = (0.0527, 0.1587, 0.5, 0.8414, 0.9473)

MIN_CALIBRATION_PAIRS = 2

# spawn_key stages for the per-iteration random streams
RESAMPLE_STREAM = 0
NOISE_STREAM = 1

DEFAULT_CONFIG = {
    'calibration_threshold': 0.5,   # time units (hours by default)
    'discharge_threshold': 1.0,
    'n_iterations': 1000,
    'formula': 'analyte ~ surrogate',
    'probs': DEFAULT_PROBS,
    'unit_factor': 1e-9,            # mg/l * m3/s * s -> kt
    'max_retries': 25,
    'seed': None,
}


class RTLoadsError(Exception):
    """Base class for fatal pipeline errors. `stage` names the failing stage."""
    stage = None


class InsufficientCalibrationData(RTLoadsError, ValueError):
    stage = 'calibrate'

    def __init__(self, n_pairs, n_rejected=0, minimum=MIN_CALIBRATION_PAIRS):
        self.n_pairs = n_pairs
        self.n_rejected = n_rejected
        self.minimum = minimum
        super().__init__(
            f"calibrate: {n_pairs} valid calibration pair(s) after threshold filtering "
            f"({n_rejected} rejected); at least {minimum} are required for regression."
        )


class RegressionFitFailure(RTLoadsError, RuntimeError):
    stage = 'regress'

    def __init__(self, iteration, retries):
        self.iteration = iteration
        self.retries = retries
        super().__init__(
            f"regress: bootstrap iteration {iteration} produced a singular fit "
            f"after {retries} retries; the ensemble was discarded."
        )


class DimensionMismatch(RTLoadsError, ValueError):
    def __init__(self, message, stage='integrate'):
        self.stage = stage
        super().__init__(f"{stage}: {message}")


def sigma_probabilities(sigmas=(2, 1)):
    """
    Returns the five quantile levels (-s1, -s2, median, +s2, +s1) for the
    given sigma multiples under a standard normal distribution.
    sigma_probabilities() -> (0.02275, 0.15866, 0.5, 0.84134, 0.97725)
    """
    outer, inner = sigmas
    if not outer > inner > 0:
        raise ValueError(f"sigmas must be strictly decreasing positive values, got {sigmas}")
    return tuple(float(p) for p in norm.cdf([-outer, -inner, 0.0, inner, outer]))


def check_probs(probs, tol=1e-3):
    """
    Validates a five-level quantile probability set: strictly increasing
    inside (0, 1), centred on 0.5 and symmetric about it within `tol`.
    """
    p = np.asarray(probs, dtype=float)
    if p.shape != (len(BAND_NAMES),):
        raise ValueError(f"probs must contain exactly {len(BAND_NAMES)} levels, got {p.size}")
    if not np.all(np.isfinite(p)) or p[0] <= 0 or p[-1] >= 1:
        raise ValueError(f"probs must lie strictly inside (0, 1), got {tuple(p)}")
    if np.any(np.diff(p) <= 0):
        raise ValueError(f"probs must be strictly increasing, got {tuple(p)}")
    if abs(p[2] - 0.5) > tol:
        raise ValueError(f"middle probability level must be 0.5, got {p[2]}")
    if np.any(np.abs(p + p[::-1] - 1.0) > tol):
        raise ValueError(f"probs must be symmetric about 0.5, got {tuple(p)}")
    return p


def validate_config(config=None):
    """
    Merges a (partial) configuration dict over DEFAULT_CONFIG and validates it.
    Returns a new dict; the input is not modified.
    """
    merged = dict(DEFAULT_CONFIG)
    if config:
        unknown = sorted(set(config) - set(DEFAULT_CONFIG))
        if unknown:
            raise ValueError(f"Unknown configuration key(s): {unknown}")
        merged.update(config)

    for key in ('calibration_threshold', 'discharge_threshold'):
        value = float(merged[key])
        if np.isnan(value) or value < 0:
            raise ValueError(f"'{key}' must be a non-negative number of time units, got {merged[key]}")
        merged[key] = value

    if int(merged['n_iterations']) != merged['n_iterations'] or merged['n_iterations'] < 1:
        raise ValueError(f"'n_iterations' must be a positive integer, got {merged['n_iterations']}")
    merged['n_iterations'] = int(merged['n_iterations'])

    if int(merged['max_retries']) != merged['max_retries'] or merged['max_retries'] < 0:
        raise ValueError(f"'max_retries' must be a non-negative integer, got {merged['max_retries']}")
    merged['max_retries'] = int(merged['max_retries'])

    if not np.isfinite(float(merged['unit_factor'])):
        raise ValueError(f"'unit_factor' must be finite, got {merged['unit_factor']}")
    merged['unit_factor'] = float(merged['unit_factor'])

    merged['probs'] = tuple(check_probs(merged['probs']))

    if not isinstance(merged['formula'], RegressionForm):
        merged['formula'] = RegressionForm.from_formula(merged['formula'])

    return merged


def to_numeric_time(times, unit_seconds=3600.0):
    """
    Converts timestamps to float time units since 1970-01-01 (hours by default).
    Numeric input is assumed to already be in the caller's time unit and is
    returned as float64.
    """
    if isinstance(times, TimeSeries):
        return times.times.copy()

    arr = np.asarray(times)
    if arr.dtype.kind in 'iuf':
        return arr.astype(float)

    stamps = pd.DatetimeIndex(pd.to_datetime(np.ravel(arr)))
    if stamps.tz is not None:
        stamps = stamps.tz_convert('UTC').tz_localize(None)
    if stamps.hasnans:
        raise ValueError("Timestamps must not contain missing values (NaT).")

    elapsed = (stamps - pd.Timestamp('1970-01-01')) / pd.Timedelta(seconds=unit_seconds)
    return np.asarray(elapsed, dtype=float).reshape(arr.shape)


def sampling_interval(times, seconds_per_unit=3600.0):
    """
    Per-step sampling interval (seconds) for load integration.
    dt[i] = t[i] - t[i-1]; the first step has no predecessor and uses the
    median of the remaining steps.
    """
    if isinstance(times, TimeSeries):
        seconds_per_unit = times.unit_seconds
    t = to_numeric_time(times, seconds_per_unit)
    if t.size < 2:
        raise ValueError("At least two timestamps are needed to derive a sampling interval; pass dt explicitly.")

    steps = np.diff(t) * seconds_per_unit
    dt = np.empty(t.size)
    dt[1:] = steps
    dt[0] = np.nanmedian(steps)
    return dt


class TimeSeries:
    def __init__(self, times, values, name=None, unit_seconds=3600.0):
        """
        times: timestamps (datetime-like, or numeric time units)
        values: real values; NaN/inf mark missing readings
        unit_seconds: length of one numeric time unit in seconds, used when
            converting datetime-like timestamps (3600 -> hours)
        """
        self.unit_seconds = float(unit_seconds)
        t = to_numeric_time(times, self.unit_seconds)
        v = np.array(values, dtype=float)

        if t.ndim != 1 or v.ndim != 1:
            raise ValueError("TimeSeries times and values must be one-dimensional.")
        if t.size != v.size:
            raise ValueError(f"TimeSeries length mismatch: {t.size} timestamps vs {v.size} values.")
        if np.isnan(t).any():
            raise ValueError("TimeSeries timestamps must not be missing.")
        if np.any(np.diff(t) < 0):
            raise ValueError("TimeSeries timestamps must be non-decreasing.")

        t.setflags(write=False)
        v.setflags(write=False)
        self.times = t
        self.values = v
        self.name = name

    @classmethod
    def from_frame(cls, df, time_col, value_col, unit_seconds=3600.0):
        return cls(df[time_col].values, df[value_col].values, name=value_col, unit_seconds=unit_seconds)

    @property
    def finite(self):
        return np.isfinite(self.values)

    def to_frame(self):
        return pd.DataFrame({'time': self.times, self.name or 'value': self.values})

    def __len__(self):
        return self.times.size

    def __repr__(self):
        return f"TimeSeries(name={self.name!r}, n={len(self)}, finite={int(self.finite.sum())})"


def _target_times(target_times, unit_seconds):
    if isinstance(target_times, TimeSeries):
        if target_times.unit_seconds != unit_seconds:
            return target_times.times * (target_times.unit_seconds / unit_seconds)
        return target_times.times
    return np.atleast_1d(to_numeric_time(target_times, unit_seconds))


def align_series(source, target_times, threshold):
    """
    Linear interpolation of `source` onto `target_times`, limited by the time
    since the previous OR following finite reading.

    For each target t bracketed by finite readings t0 <= t <= t1 the gap is
    max(t - t0, t1 - t) (0 on an exact hit) and the sample is kept only if
    gap <= threshold. Targets outside the finite range are always missing; their
    gap is the distance to the nearest finite reading.

    Returns: DataFrame (one row per target, input order) with columns
        ['time', 'value', 'interpolated', 'gap', 'within_threshold', 'missing']
        'value' is NaN wherever 'missing' is True.
    """
    threshold = float(threshold)
    if np.isnan(threshold) or threshold < 0:
        raise ValueError(f"Alignment threshold must be non-negative, got {threshold}")

    targets = _target_times(target_times, source.unit_seconds)
    n = targets.size

    ok = source.finite
    st = source.times[ok]
    sv = source.values[ok]

    interpolated = np.full(n, np.nan)
    gap = np.full(n, np.inf)
    inside = np.zeros(n, dtype=bool)

    if st.size > 0 and n > 0:
        # First finite reading at or after each target
        right = np.searchsorted(st, targets, side='left')
        clipped = np.minimum(right, st.size - 1)

        exact = (right < st.size) & (st[clipped] == targets)
        between = (right > 0) & (right < st.size) & ~exact

        # 1. Exact hits
        interpolated[exact] = sv[right[exact]]
        gap[exact] = 0.0

        # 2. Bracketed targets
        hi = right[between]
        lo = hi - 1
        t = targets[between]
        t0, t1 = st[lo], st[hi]
        w = (t - t0) / (t1 - t0)
        interpolated[between] = sv[lo] + w * (sv[hi] - sv[lo])
        gap[between] = np.maximum(t - t0, t1 - t)

        # 3. Outside the finite range
        before = (right == 0) & ~exact
        after = right == st.size
        gap[before] = st[0] - targets[before]
        gap[after] = targets[after] - st[-1]

        inside = exact | between

    within = inside & (gap <= threshold)
    value = np.where(within, interpolated, np.nan)

    return pd.DataFrame({
        'time': targets,
        'value': value,
        'interpolated': interpolated,
        'gap': gap,
        'within_threshold': within,
        'missing': ~within,
    })


class CalibrationDataset:
    """
    Analyte samples paired with the surrogate interpolated onto their times.

    pairs: DataFrame ['time', 'analyte', 'surrogate', 'gap'] sorted by time
    rejected: DataFrame of discarded samples with a 'reason' column
        ('missing_analyte', 'gap' or 'duplicate')
    """

    def __init__(self, pairs, rejected, threshold):
        self.pairs = pairs.reset_index(drop=True)
        self.rejected = rejected.reset_index(drop=True)
        self.threshold = threshold

        self.x = self.pairs['surrogate'].to_numpy(dtype=float, copy=True)
        self.y = self.pairs['analyte'].to_numpy(dtype=float, copy=True)
        self.x.setflags(write=False)
        self.y.setflags(write=False)

    def __len__(self):
        return len(self.pairs)

    def __repr__(self):
        return f"CalibrationDataset(n_pairs={len(self)}, n_rejected={len(self.rejected)}, threshold={self.threshold})"


def build_calibration(surrogate, obs_times, obs_values, threshold):
    """
    Aligns sparse analyte observations to the surrogate series and keeps the
    pairs that are within `threshold` and finite on both sides.
    Raises InsufficientCalibrationData when fewer than 2 pairs survive.
    """
    times = _target_times(obs_times, surrogate.unit_seconds)
    y = np.array(obs_values, dtype=float).ravel()
    if times.size != y.size:
        raise ValueError(f"Observation length mismatch: {times.size} times vs {y.size} values.")

    aligned = align_series(surrogate, times, threshold)

    frame = pd.DataFrame({
        'time': times,
        'analyte': y,
        'surrogate': aligned['value'].values,
        'gap': aligned['gap'].values,
    })

    reason = np.full(len(frame), '', dtype=object)
    reason[~np.isfinite(y)] = 'missing_analyte'
    reason[(reason == '') & aligned['missing'].values] = 'gap'
    frame['reason'] = reason

    kept = frame[frame['reason'] == ''].sort_values('time', kind='mergesort')
    dup = kept.duplicated(subset=['time', 'analyte'], keep='first')
    frame.loc[dup[dup].index, 'reason'] = 'duplicate'
    kept = kept[~dup]

    rejected = frame[frame['reason'] != '']
    n_gap = int((rejected['reason'] == 'gap').sum())
    if n_gap:
        logger.warning("%d of %d analyte samples exceed the %.4g time-unit alignment threshold and were discarded.",
                       n_gap, len(frame), threshold)

    if len(kept) < MIN_CALIBRATION_PAIRS:
        raise InsufficientCalibrationData(len(kept), len(rejected))

    logger.info("Calibration dataset: %d pairs (%d rejected).", len(kept), len(rejected))
    return CalibrationDataset(kept.drop(columns='reason'), rejected, threshold)


class Transform:
    """Monotone transform with its inverse; values outside `domain` map to NaN."""

    def __init__(self, name, forward, inverse, domain):
        self.name = name
        self.forward = forward
        self.inverse = inverse
        self.domain = domain

    def apply(self, values):
        v = np.asarray(values, dtype=float)
        out = np.full(v.shape, np.nan)
        ok = np.isfinite(v)
        ok[ok] = self.domain(v[ok])
        out[ok] = self.forward(v[ok])
        return out

    def invert(self, values):
        with np.errstate(over='ignore'):
            return self.inverse(np.asarray(values, dtype=float))

    def __repr__(self):
        return f"Transform({self.name!r})"


TRANSFORMS = {
    'identity': Transform('identity', lambda v: v.copy(), lambda v: v.copy(), lambda v: np.ones(v.shape, dtype=bool)),
    'log10': Transform('log10', np.log10, lambda v: np.power(10.0, v), lambda v: v > 0),
    'ln': Transform('ln', np.log, np.exp, lambda v: v > 0),
    'sqrt': Transform('sqrt', np.sqrt, np.square, lambda v: v >= 0),
}
TRANSFORM_ALIASES = {'log': 'ln', 'none': 'identity', 'linear': 'identity'}


def get_transform(name):
    if isinstance(name, Transform):
        return name
    key = str(name).strip().lower()
    key = TRANSFORM_ALIASES.get(key, key)
    if key not in TRANSFORMS:
        raise ValueError(f"Unknown transform '{name}'. Available: {sorted(TRANSFORMS)}")
    return TRANSFORMS[key]


_TERM = re.compile(r'^\s*(?:(?P<fn>\w+)\s*\(\s*(?P<arg>[^()~]+?)\s*\)|(?P<bare>[^()~]+?))\s*$')


def _parse_term(term):
    m = _TERM.match(term)
    if m is None:
        raise ValueError(f"Cannot parse regression term '{term.strip()}'; expected 'column' or 'transform(column)'.")
    if m.group('fn'):
        return get_transform(m.group('fn')), m.group('arg')
    return TRANSFORMS['identity'], m.group('bare')


class RegressionForm:
    """
    Simple linear regression of a (transformed) response on a (transformed)
    predictor: response(y) = intercept + slope * predictor(x) + e
    """

    def __init__(self, response='identity', predictor='identity', response_name='analyte', predictor_name='surrogate'):
        self.response = get_transform(response)
        self.predictor = get_transform(predictor)
        self.response_name = response_name
        self.predictor_name = predictor_name

    @classmethod
    def from_formula(cls, formula):
        """
        Parses 'log10(SSC) ~ SNR_dB' style formulas. Only the transforms in
        TRANSFORMS are recognised; nothing is evaluated.
        """
        if formula.count('~') != 1:
            raise ValueError(f"Regression formula must contain exactly one '~', got '{formula}'")
        lhs, rhs = formula.split('~')
        response, response_name = _parse_term(lhs)
        predictor, predictor_name = _parse_term(rhs)
        return cls(response, predictor, response_name, predictor_name)

    @property
    def formula(self):
        def term(t, name):
            return name if t.name == 'identity' else f"{t.name}({name})"
        return f"{term(self.response, self.response_name)} ~ {term(self.predictor, self.predictor_name)}"

    def __repr__(self):
        return f"RegressionForm({self.formula!r})"


def fit_ols(x, y):
    """
    Ordinary least squares fit of y = intercept + slope * x.
    Returns (intercept, slope, sigma) where sigma is the residual standard
    error (n - 2 degrees of freedom, 0 for an exactly determined fit), or
    None if the fit is singular.
    """
    n = x.size
    if n < 2 or np.ptp(x) == 0:
        return None

    X = np.column_stack([np.ones(n), x])
    try:
        betas, _, rank, _ = np.linalg.lstsq(X, y, rcond=None)
    except np.linalg.LinAlgError:
        return None
    if rank < 2:
        return None

    sse = np.sum((y - X @ betas)**2)
    dof = n - 2
    sigma = np.sqrt(sse / dof) if dof > 0 else 0.0
    return float(betas[0]), float(betas[1]), float(sigma)


def _iteration_streams(seed, n, stage):
    """
    One independent SeedSequence per iteration. An int (or None) seed is keyed
    by `stage` so resampling and residual noise never share a stream; a
    SeedSequence is used as given.
    """
    if isinstance(seed, np.random.SeedSequence):
        root = seed
    else:
        root = np.random.SeedSequence(seed, spawn_key=(stage,))
    return root.spawn(n)


class RegressionEnsemble:
    """
    B fitted parameter sets. params: DataFrame ['intercept', 'slope', 'sigma', 'retries']
    (sigma is in the transformed response space).
    """

    def __init__(self, params, retries, form, calibration=None):
        params = np.asarray(params, dtype=float)
        self.form = form
        self.calibration = calibration
        self.params = pd.DataFrame({
            'intercept': params[:, 0],
            'slope': params[:, 1],
            'sigma': params[:, 2],
            'retries': np.asarray(retries, dtype=int),
        })
        self.intercept = params[:, 0].copy()
        self.slope = params[:, 1].copy()
        self.sigma = params[:, 2].copy()
        for arr in (self.intercept, self.slope, self.sigma):
            arr.setflags(write=False)

    def __len__(self):
        return self.intercept.size

    def summary(self, probs=DEFAULT_PROBS):
        """Quantile bands of each parameter across the ensemble."""
        cols = ['intercept', 'slope', 'sigma']
        bands = quantile_bands(self.params[cols].values, probs)
        bands.index = cols
        return bands

    def central_fit(self):
        """OLS fit on the full (un-resampled) calibration set, for QC display."""
        if self.calibration is None:
            return None
        x = self.form.predictor.apply(self.calibration.x)
        y = self.form.response.apply(self.calibration.y)
        return fit_ols(x, y)

    def __repr__(self):
        return f"RegressionEnsemble({self.form.formula!r}, n_iterations={len(self)})"


def bootstrap_regression(dataset, form=None, n_iterations=1000, seed=None, max_retries=25):
    """
    Nonparametric bootstrap of the regression form on the calibration pairs.

    Each iteration draws N pairs with replacement from its own random stream and
    fits OLS in the transformed space. Singular resamples are redrawn up to
    `max_retries` times before RegressionFitFailure is raised.

    Returns: RegressionEnsemble with exactly n_iterations parameter sets.
    """
    if form is None:
        form = RegressionForm()
    if n_iterations < 1:
        raise ValueError(f"n_iterations must be >= 1, got {n_iterations}")
    if len(dataset) < MIN_CALIBRATION_PAIRS:
        raise InsufficientCalibrationData(len(dataset))

    x = form.predictor.apply(dataset.x)
    y = form.response.apply(dataset.y)
    outside = ~(np.isfinite(x) & np.isfinite(y))
    if outside.any():
        raise ValueError(
            f"{int(outside.sum())} calibration pair(s) fall outside the domain of '{form.formula}'. "
            "Log and sqrt transforms require strictly positive (non-negative for sqrt) data."
        )

    n = x.size
    logger.info("Starting Bootstrap Regression (%d runs, %d pairs, %s)...", n_iterations, n, form.formula)

    params = np.full((n_iterations, 3), np.nan)
    retries = np.zeros(n_iterations, dtype=int)

    for i, stream in enumerate(_iteration_streams(seed, n_iterations, RESAMPLE_STREAM)):
        rng = np.random.default_rng(stream)
        attempt = 0
        while True:
            idx = rng.choice(n, size=n, replace=True)
            fit = fit_ols(x[idx], y[idx])
            if fit is not None:
                break
            if attempt >= max_retries:
                raise RegressionFitFailure(i, attempt)
            attempt += 1
        params[i] = fit
        retries[i] = attempt

    if retries.any():
        logger.warning("%d singular bootstrap resample(s) were redrawn across %d iteration(s).",
                       int(retries.sum()), int((retries > 0).sum()))

    return RegressionEnsemble(params, retries, form, dataset)


def quantile_bands(matrix, probs=DEFAULT_PROBS):
    """
    Reduces an ensemble (iterations x positions) to the five named quantile
    bands per position. A 1-D input is treated as a single position.
    Positions with any non-finite member are NaN in every band.
    """
    p = check_probs(probs)
    m = np.asarray(matrix, dtype=float)
    if m.ndim == 1:
        m = m[:, np.newaxis]
    if m.shape[0] == 0:
        raise ValueError("Cannot summarise an empty ensemble.")

    out = np.full((m.shape[1], len(BAND_NAMES)), np.nan)
    ok = np.isfinite(m).all(axis=0)
    if ok.any():
        out[ok] = np.quantile(m[:, ok], p, axis=0).T
    return pd.DataFrame(out, columns=list(BAND_NAMES))


class PredictionEnsemble:
    """B x T matrix of predicted analyte values over the surrogate timestamps."""

    def __init__(self, surrogate, matrix, regression):
        self.surrogate = surrogate
        self.regression = regression
        self.matrix = matrix
        self.matrix.setflags(write=False)

    @property
    def times(self):
        return self.surrogate.times

    @property
    def shape(self):
        return self.matrix.shape

    def __len__(self):
        return self.matrix.shape[0]

    def quantiles(self, probs=DEFAULT_PROBS):
        bands = quantile_bands(self.matrix, probs)
        bands.insert(0, 'time', self.times)
        return bands


def predict_ensemble(surrogate, regression, seed=None):
    """
    Applies every parameter set to the full surrogate series with one residual
    draw per timestep (scaled by that iteration's sigma), then inverts the
    response transform. Non-finite surrogate values stay non-finite in every row.

    Returns: PredictionEnsemble
    """
    B = len(regression)
    T = len(surrogate)
    if T == 0:
        raise DimensionMismatch("surrogate series is empty", stage='predict')

    form = regression.form
    x = form.predictor.apply(surrogate.values)
    finite = np.isfinite(x)

    outside = surrogate.finite & ~finite
    if outside.any():
        logger.warning("%d surrogate value(s) fall outside the domain of the '%s' transform and are treated as missing.",
                       int(outside.sum()), form.predictor.name)

    logger.info("Starting Ensemble Prediction (%d runs x %d timesteps)...", B, T)

    matrix = np.full((B, T), np.nan)
    for i, stream in enumerate(_iteration_streams(seed, B, NOISE_STREAM)):
        rng = np.random.default_rng(stream)
        noise = rng.standard_normal(T) * regression.sigma[i]
        row = regression.intercept[i] + regression.slope[i] * x + noise
        matrix[i, finite] = form.response.invert(row[finite])

    return PredictionEnsemble(surrogate, matrix, regression)


def _step_seconds(dt, times, unit_seconds):
    if dt is None:
        return sampling_interval(times, unit_seconds)
    step = np.asarray(dt, dtype=float)
    if step.ndim == 0:
        return np.full(times.size, float(step))
    if step.shape != times.shape:
        raise DimensionMismatch(f"dt has {step.size} entries but the series has {times.size} timesteps")
    return step


def _check_overlap(discharge, times):
    if times.size == 0 or len(discharge) == 0:
        raise DimensionMismatch("discharge and surrogate series must both be non-empty")
    qt = discharge.times[discharge.finite]
    if qt.size == 0:
        raise DimensionMismatch("discharge series has no finite values")
    lo, hi = times.min(), times.max()
    if qt[-1] < lo or qt[0] > hi:
        raise DimensionMismatch(
            f"discharge range [{qt[0]:.6g}, {qt[-1]:.6g}] does not overlap "
            f"the target range [{lo:.6g}, {hi:.6g}]"
        )


class LoadEnsemble:
    """
    flux: B x T matrix of mass per timestep (concentration x Q x dt x unit_factor)
    totals: B per-iteration loads, the sum of the finite entries of each flux row
    discharge: aligned discharge (align_series output on the surrogate times)
    """

    def __init__(self, times, flux, totals, discharge, dt, unit_factor):
        self.times = times
        self.flux = flux
        self.totals = totals
        self.discharge = discharge
        self.dt = dt
        self.unit_factor = unit_factor
        self.flux.setflags(write=False)
        self.totals.setflags(write=False)

    def __len__(self):
        return self.totals.size

    def flux_quantiles(self, probs=DEFAULT_PROBS):
        bands = quantile_bands(self.flux, probs)
        bands.insert(0, 'time', self.times)
        return bands

    def total_quantiles(self, probs=DEFAULT_PROBS):
        return quantile_bands(self.totals, probs)

    @property
    def reported_load(self):
        return float(np.median(self.totals))


def integrate_load(prediction, discharge, threshold, dt=None, unit_factor=1e-9):
    """
    Converts a prediction ensemble into flux and total load.

    prediction: PredictionEnsemble (concentration)
    discharge: TimeSeries, aligned onto the surrogate times with `threshold`
    dt: None (derived from the surrogate timestamps in the surrogate's
        unit_seconds), scalar or per-step seconds
    unit_factor: folded into every flux entry (1e-9 for mg/l * m3/s * s -> kt)

    Returns: LoadEnsemble
    """
    surrogate = prediction.surrogate
    times = surrogate.times
    if prediction.matrix.shape[1] != times.size:
        raise DimensionMismatch(
            f"prediction ensemble has {prediction.matrix.shape[1]} timesteps but the surrogate has {times.size}"
        )
    if discharge.unit_seconds != surrogate.unit_seconds:
        raise ValueError(
            f"discharge time unit ({discharge.unit_seconds:g} s) differs from the surrogate's "
            f"({surrogate.unit_seconds:g} s)"
        )
    _check_overlap(discharge, times)

    aligned = align_series(discharge, times, threshold)
    n_missing = int(aligned['missing'].sum())
    if n_missing:
        logger.warning("Discharge is missing or beyond the %.4g time-unit threshold at %d of %d timesteps.",
                       threshold, n_missing, times.size)

    step = _step_seconds(dt, times, surrogate.unit_seconds)

    scale = aligned['value'].values * step * unit_factor
    flux = prediction.matrix * scale[np.newaxis, :]
    totals = np.where(np.isfinite(flux), flux, 0.0).sum(axis=1)

    logger.info("Load integration complete: median total %.6g over %d runs.", np.median(totals), totals.size)
    return LoadEnsemble(times, flux, totals, aligned, step, unit_factor)


def point_sample_load(obs_times, obs_values, discharge, threshold, dt=None, unit_factor=1e-9):
    """
    Load implied by the direct analyte samples alone (sum of available
    sample x Q x dt), for comparison with the estimated total.

    dt: None integrates over the spacing between the samples themselves
        (first sample uses the median spacing). To weight each sample by the
        continuous record's step instead, pass per-sample seconds (same order
        as obs_times) or a scalar.
    """
    times = _target_times(obs_times, discharge.unit_seconds)
    conc = np.array(obs_values, dtype=float).ravel()
    if times.size != conc.size:
        raise ValueError(f"Observation length mismatch: {times.size} times vs {conc.size} values.")
    if dt is not None and np.ndim(dt) > 0 and np.size(dt) != times.size:
        raise DimensionMismatch(f"dt has {np.size(dt)} entries but there are {times.size} samples")

    order = np.argsort(times, kind='mergesort')
    times, conc = times[order], conc[order]
    if dt is not None and np.ndim(dt) == 1:
        dt = np.asarray(dt, dtype=float)[order]
    _check_overlap(discharge, times)

    q = align_series(discharge, times, threshold)['value'].values
    step = _step_seconds(dt, times, discharge.unit_seconds)
    flux = conc * q * step * unit_factor
    return float(flux[np.isfinite(flux)].sum())


class LoadEstimate:
    def __init__(self, calibration, regression, prediction, load, probs):
        self.calibration = calibration
        self.regression = regression
        self.prediction = prediction
        self.load = load
        self.probs = probs

        self.concentration_quantiles = prediction.quantiles(probs)
        self.flux_quantiles = load.flux_quantiles(probs)
        self.total_load = load.total_quantiles(probs)

    def summary(self):
        bands = self.total_load.iloc[0]
        return {
            'formula': self.regression.form.formula,
            'n_pairs': len(self.calibration),
            'n_iterations': len(self.regression),
            'n_timesteps': self.prediction.shape[1],
            'reported_load': float(bands['median']),
            'total_load': {name: float(bands[name]) for name in BAND_NAMES},
        }


class LoadEstimator:
    def __init__(self, config=None):
        """
        config: dict of overrides for DEFAULT_CONFIG, e.g.
            {'calibration_threshold': 0.5, 'formula': 'log10(SSC) ~ SNR_dB', 'n_iterations': 500}
        """
        self.config = validate_config(config)
        self.form = self.config['formula']
        self.probs = self.config['probs']

    def calibrate(self, surrogate, obs_times, obs_values):
        return build_calibration(surrogate, obs_times, obs_values, self.config['calibration_threshold'])

    def fit(self, calibration, seed=None):
        if seed is None:
            seed = self.config['seed']
        return bootstrap_regression(calibration, self.form,
                                    n_iterations=self.config['n_iterations'],
                                    seed=seed,
                                    max_retries=self.config['max_retries'])

    def predict(self, surrogate, regression, seed=None):
        if seed is None:
            seed = self.config['seed']
        return predict_ensemble(surrogate, regression, seed=seed)

    def integrate(self, prediction, discharge, dt=None):
        return integrate_load(prediction, discharge, self.config['discharge_threshold'],
                              dt=dt,
                              unit_factor=self.config['unit_factor'])

    def run(self, surrogate, discharge, obs_times, obs_values, dt=None):
        """
        Align -> Calibrate -> Fit x B -> Predict x B -> Integrate x B -> Summarize.
        Any fatal error aborts the run; nothing partial is returned.
        """
        calibration = self.calibrate(surrogate, obs_times, obs_values)
        regression = self.fit(calibration)
        prediction = self.predict(surrogate, regression)
        load = self.integrate(prediction, discharge, dt=dt)

        return LoadEstimate(calibration, regression, prediction, load, self.probs)
