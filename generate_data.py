import pandas as pd
import numpy as np

# Create synthetic data
# 60 days at 10-minute resolution
dates = pd.date_range(start='2018-01-01', periods=60*144, freq='10min')
n = len(dates)
hours = np.arange(n) / 6.0

# Discharge (m3/s): tidal flow on a flood hydrograph
flood = 400 * np.exp(-((hours - 600) / 96.0) ** 2)
q = 150 + flood + 80 * np.sin(2 * np.pi * hours / 12.42) + np.random.normal(0, 5, n)

# Surrogate: sediment-corrected backscatter (dB)
log_c = 1.2 + 0.6 * np.log10(q) + 0.15 * np.sin(2 * np.pi * hours / 12.42 - 0.7) + np.random.normal(0, 0.05, n)
c = 10 ** log_c
snr = (log_c + 0.4) / 0.03 + np.random.normal(0, 1.0, n)

# Instrument outages
snr[2000:2150] = np.nan
q[5000:5010] = np.nan

df = pd.DataFrame({
    'time': dates,
    'SNR_dB': snr,
    'Q': q,
    'SSC': c
})

# Physical samples ~ 3 per day, taken off the instrument clock
mask = np.random.rand(n) < (3 / 144.0)
df_sample = pd.DataFrame({
    'time': dates[mask] + pd.Timedelta(minutes=4),
    'SSC': c[mask]
})

# Save
df.to_csv('test_data_timeseries.csv', index=False)
df_sample.to_csv('test_data_sample.csv', index=False)

print("Data generated. N_timesteps:", n, "N_samples:", mask.sum())
