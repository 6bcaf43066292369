import numpy as np
import sys
import os

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '../../')))
from src.rtloads import (LoadEstimator, TimeSeries, InsufficientCalibrationData)

def run_validation():
    print("--- Worked Scenario Validation ---")
    t = np.arange(5.0)
    surrogate = TimeSeries(t, [10, 12, 14, 16, 18], name='x')
    discharge = TimeSeries(t, np.full(5, 100.0), name='Q')

    est = LoadEstimator({'calibration_threshold': 1.0, 'n_iterations': 1, 'seed': 0})
    result = est.run(surrogate, discharge, [1.0, 3.0], [5.0, 7.0])

    a, b, sigma = result.regression.central_fit()
    median_t2 = result.concentration_quantiles['median'].iloc[2]
    expected_load = np.sum((-1 + 0.5 * np.array([10, 12, 14, 16, 18])) * 100 * 3600 * 1e-9)
    load = result.summary()['reported_load']

    checks = [
        ("calibration pairs == 2", len(result.calibration) == 2),
        ("slope == 0.5", np.isclose(b, 0.5)),
        ("intercept == -1", np.isclose(a, -1.0)),
        ("median at t=2 == 6.0", np.isclose(median_t2, 6.0)),
        ("total load == sum(C * Q * dt * 1e-9)", np.isclose(load, expected_load)),
    ]

    try:
        est.run(surrogate, discharge, [10.0], [5.0])
        checks.append(("sample at t=10 rejected", False))
    except InsufficientCalibrationData as e:
        print(f"Expected failure: {e}")
        checks.append(("sample at t=10 rejected", e.n_pairs == 0))

    root_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), '../../'))
    report_dir = os.path.join(root_dir, 'reports')
    os.makedirs(report_dir, exist_ok=True)
    report_path = os.path.join(report_dir, 'validation_scenario.md')

    lines = ["# Worked Scenario Validation Report", "", "## Results"]
    for name, ok in checks:
        print(f"{'SUCCESS' if ok else 'FAILURE'}: {name}")
        lines.append(f"- **{name}:** {'Pass' if ok else 'Fail'}")
    lines.append("")
    if all(ok for _, ok in checks):
        lines.append("**Conclusion:** SUCCESS. Calibration, prediction and load match the hand calculation.")
    else:
        lines.append("**Conclusion:** FAILURE. See failed checks above.")

    with open(report_path, 'w') as f:
        f.write("\n".join(lines))
    print(f"Report saved to {report_path}")

if __name__ == "__main__":
    run_validation()
