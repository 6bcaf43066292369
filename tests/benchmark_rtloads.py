import sys
import os
import time
import numpy as np
import pandas as pd

# Ensure src is in path
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from rtloads import LoadEstimator, TimeSeries

def generate_data(n_days=30):
    np.random.seed(42)
    dates = pd.date_range(start='2018-01-01', periods=n_days*144, freq='10min')
    n = len(dates)
    hours = np.arange(n) / 6.0

    # Surrogate: backscatter (dB) with a semi-diurnal tide + noise
    snr = 70 + 10 * np.sin(2 * np.pi * hours / 12.42) + np.random.normal(0, 1, n)

    # Analyte: log-linear in backscatter
    ssc = 10 ** (0.025 * snr - 0.2 + np.random.normal(0, 0.08, n))
    q = 300 + 150 * np.sin(2 * np.pi * hours / 12.42 + 0.5)

    return dates, snr, ssc, q

def run_benchmark():
    print("Generating 30 days of 10-minute data...")
    dates, snr, ssc, q = generate_data()
    surrogate = TimeSeries(dates, snr, name='SNR_dB')
    discharge = TimeSeries(dates, q, name='Q')

    idx = np.sort(np.random.choice(len(dates), 60, replace=False))

    for n_iterations in (100, 1000):
        est = LoadEstimator({'formula': 'log10(SSC) ~ SNR_dB', 'n_iterations': n_iterations,
                             'calibration_threshold': 0.5, 'seed': 1})
        print(f"Running {n_iterations} iterations on {len(dates)} timesteps...")
        start_time = time.time()
        result = est.run(surrogate, discharge, dates[idx], ssc[idx])
        end_time = time.time()
        print(f"Time: {end_time - start_time:.4f} seconds")
        print(f"Total load (kt): {result.total_load.round(4).to_dict('records')[0]}")

    # Reference: load from the full analyte record
    dt = 600.0
    actual = np.sum(ssc * q * dt * 1e-9)
    print(f"Load from full analyte record (kt): {actual:.4f}")

if __name__ == "__main__":
    run_benchmark()
