import logging

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

import fabia.inference.approx_fabia as engine
from fabia.inference.approx_fabia import ApproxFabia, FabiaRun, approx_fabia
from fabia.utils.linalg import CholeskyError
from fabia.utils.setup.initialize import initialize_parameters


def low_rank_problem(num_var=30, num_obs=80, num_factor=3, seed=0, dtype=np.float32):
    rng = np.random.default_rng(seed)
    L_true = rng.normal(size=(num_var, num_factor)) * (rng.random((num_var, num_factor)) < 0.4)
    Z_true = rng.normal(size=(num_factor, num_obs)) * (rng.random((num_factor, num_obs)) < 0.4)
    X = L_true @ (3 * Z_true) + 0.3 * rng.normal(size=(num_var, num_obs))
    X = np.asfortranarray(X, dtype=dtype)
    L, Z, Psi, lapla = initialize_parameters(X, num_factor, dtype=dtype, rng=seed + 1)
    return X, Psi, L, Z, lapla


def test_rank_one_recovery():
    u = np.array([1, 2, 3, 4], dtype=np.float32)
    v = np.array([1, -1, 1, -1, 1, -1, 1, -1], dtype=np.float32)
    X = np.asfortranarray(np.outer(u, v))
    Psi = np.full(4, 0.1, dtype=np.float32)
    L = np.ones((4, 1), dtype=np.float32, order="F")
    Z = np.zeros((1, 8), dtype=np.float32, order="F")
    lapla = np.ones((1, 8), dtype=np.float32, order="F")

    run = approx_fabia(
        X, Psi, L, Z, lapla, cyc=50, alpha=0.01, eps=1e-3, spl=0.5, spz=0.5, scale=True, seed=0
    )

    assert run.status == "completed"
    assert run.iterations == 50
    cosine = abs(L[:, 0] @ u) / (np.linalg.norm(L[:, 0]) * np.linalg.norm(u))
    angle = np.degrees(np.arccos(min(cosine, 1.0)))
    assert angle < 2.0, f"L is {angle:.2f} degrees away from u"
    np.testing.assert_allclose(np.abs(Z[0]), np.abs(Z[0, 0]), rtol=1e-4)
    sign = np.sign(Z[0, 0]) * np.sign(v[0])
    np.testing.assert_array_equal(np.sign(Z[0]), sign * np.sign(v))


def test_pure_noise():
    rng = np.random.default_rng(5)
    num_var, num_obs, num_factor = 16, 64, 3
    X = np.asfortranarray(rng.normal(size=(num_var, num_obs)), dtype=np.float32)
    L, Z, Psi, lapla = initialize_parameters(X, num_factor, rng=6)
    eps = 1e-3

    run = approx_fabia(X, Psi, L, Z, lapla, cyc=20, eps=eps, scale=False, seed=7)

    assert run.status == "completed"
    assert np.all(np.isfinite(L)) and np.all(np.isfinite(Z)), "Non-finite estimates"
    assert np.all(Psi >= eps), "Psi fell below eps"
    assert 0.5 < Psi.mean() < 1.5, f"Psi drifted away from the noise level: {Psi.mean()}"
    assert np.linalg.norm(L) < np.sqrt(num_var * num_factor), "Loadings too large for noise"


def test_zero_column_is_reset(caplog):
    X, Psi, L, Z, lapla = low_rank_problem(seed=2)
    L[:, 1] = 0
    caplog.set_level(logging.INFO, logger="fabia.inference.approx_fabia")

    run = approx_fabia(X, Psi, L, Z, lapla, cyc=1, seed=3)

    assert run.status == "completed"
    assert run.nresets == 1
    assert "iter 1: reset 1 clusters" in caplog.text
    assert L[:, 1].any(), "Column is still zero"
    np.testing.assert_array_equal(lapla[1], np.ones(lapla.shape[1], dtype=np.float32))


def test_zero_data_collapses(caplog):
    num_var, num_obs, num_factor = 6, 10, 2
    X = np.zeros((num_var, num_obs), dtype=np.float32, order="F")
    L, Z, Psi, lapla = initialize_parameters(X, num_factor, rng=0)
    Z += 1
    eps = 1e-3

    run = approx_fabia(X, Psi, L, Z, lapla, cyc=10, eps=eps)

    assert run.status == "collapsed"
    assert run.iterations == 0
    assert not Z.any(), "Z must be zero after a collapse"
    np.testing.assert_allclose(Psi, eps)
    np.testing.assert_allclose(lapla, eps)
    assert "smaller than" in caplog.text


def test_large_alpha_collapses_before_reset():
    X, Psi, L, Z, lapla = low_rank_problem(seed=4)

    run = approx_fabia(X, Psi, L, Z, lapla, cyc=3, alpha=1e6)

    assert run.status == "collapsed"
    assert run.nresets == 0


@pytest.mark.parametrize("nthreads", [2, 4, 8])
def test_thread_invariance(nthreads):
    reference = low_rank_problem(seed=9, dtype=np.float64)
    approx_fabia(*reference, cyc=30, nthreads=1, dtype=np.float64, seed=10)

    problem = low_rank_problem(seed=9, dtype=np.float64)
    approx_fabia(*problem, cyc=30, nthreads=nthreads, dtype=np.float64, seed=10)

    L_ref, L = reference[2], problem[2]
    assert np.linalg.norm(L - L_ref) / np.linalg.norm(L_ref) < 1e-4


def test_single_thread_is_deterministic():
    first = low_rank_problem(seed=12)
    second = low_rank_problem(seed=12)

    approx_fabia(*first, cyc=15, seed=13)
    approx_fabia(*second, cyc=15, seed=13)

    for a, b in zip(first, second):
        np.testing.assert_array_equal(a, b)


def test_zero_cycles_change_nothing():
    problem = low_rank_problem(seed=14)
    before = [array.copy() for array in problem]

    run = approx_fabia(*problem, cyc=0)

    assert run == FabiaRun("completed", 0, 0, run.timings)
    for array, original in zip(problem, before):
        np.testing.assert_array_equal(array, original)


def test_scale_gives_unit_columns():
    X, Psi, L, Z, lapla = low_rank_problem(seed=15)

    run = approx_fabia(X, Psi, L, Z, lapla, cyc=10, scale=True, seed=16)

    assert run.nresets == 0
    np.testing.assert_allclose(np.mean(L * L, axis=0), 1.0, rtol=1e-4)


def test_callback_every_verbose_iterations():
    X, Psi, L, Z, lapla = low_rank_problem(seed=17)
    calls = []

    def callback(iteration, elapsed, k, n, l, L_, Z_, Psi_, lapla_):
        calls.append((iteration, k, n, l, L_.shape, Z_.shape, Psi_.shape, lapla_.shape))
        assert elapsed >= 0

    approx_fabia(X, Psi, L, Z, lapla, cyc=6, verbose=2, callback=callback)

    assert [call[0] for call in calls] == [2, 4, 6]
    assert calls[0][1:] == (3, 30, 80, (30, 3), (3, 80), (30,), (3, 80))


def test_results_are_published_into_other_dtype():
    X, Psi, L, Z, lapla = low_rank_problem(seed=18, dtype=np.float64)
    L_before = L.copy()

    run = approx_fabia(X, Psi, L, Z, lapla, cyc=5, dtype=np.float32)

    assert run.status == "completed"
    assert L.dtype == np.float64
    assert not np.array_equal(L, L_before), "L was not updated"
    assert Z.any(), "Z was not updated"


def test_out_of_memory_zeroes_outputs(monkeypatch, caplog):
    X, Psi, L, Z, lapla = low_rank_problem(seed=19)
    Z += 1
    Psi_before = Psi.copy()

    def fail(*args, **kwargs):
        raise MemoryError

    monkeypatch.setattr(engine, "allocate_workspaces", fail)
    run = approx_fabia(X, Psi, L, Z, lapla, cyc=5)

    assert run.status == "out_of_memory"
    assert not L.any() and not Z.any(), "L and Z must be zeroed"
    np.testing.assert_array_equal(Psi, Psi_before)
    assert "Out of memory" in caplog.text


def test_cholesky_failure_propagates(monkeypatch):
    X, Psi, L, Z, lapla = low_rank_problem(seed=20)

    def fail(matrix):
        raise CholeskyError("potrf", 1)

    monkeypatch.setattr(engine, "invert_cholesky", fail)
    with pytest.raises(CholeskyError):
        approx_fabia(X, Psi, L, Z, lapla, cyc=5)


@pytest.mark.parametrize(
    "kwargs",
    [{"cyc": -1}, {"verbose": -1}, {"nthreads": 0}],
)
def test_invalid_controls(kwargs):
    with pytest.raises(ValueError):
        approx_fabia(*low_rank_problem(), **kwargs)


def test_invalid_shapes():
    X, Psi, L, Z, lapla = low_rank_problem()

    with pytest.raises(ValueError):
        approx_fabia(X, Psi[:-1], L, Z, lapla)
    with pytest.raises(ValueError):
        approx_fabia(X, Psi, L, Z, lapla.T)
    with pytest.raises(ValueError):
        approx_fabia(X, Psi, L[:, :0], Z[:0], lapla[:0])


def test_approx_fabia_class():
    X = low_rank_problem(seed=21)[0]

    model = ApproxFabia(X, num_factor=3, seed=22)
    model.fit(iterations=6, store=True, progress=False)

    assert model.run.status == "completed"
    assert model.L.shape == (30, 3), "L has incorrect shape"
    assert model.Z.shape == (3, 80), "Z has incorrect shape"
    assert model.Psi.shape == (30,), "Psi has incorrect shape"
    assert model.lapla.shape == (3, 80), "lapla has incorrect shape"

    # Check that paths are being stored
    assert list(model.paths) == ["init", 1, 2, 3, 4, 5, 6], "Paths incorrect"
    assert len(model.get_path("L", (0, 0))) == 7, "L path length incorrect"
    with pytest.raises(KeyError):
        model.get_path("Omega")

    fig = model.plot_heatmaps("L")
    assert len(fig.axes) == 10
