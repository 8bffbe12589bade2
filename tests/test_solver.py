# End-to-end behaviour of the driver and minimize().

import dataclasses
import warnings

import numpy as np
import pytest
from numpy.testing import assert_allclose, assert_array_equal

import quadtr.dfo
from quadtr import CallbackSignal, DFOSolver, ExitStatus, UOAConfig, minimize
from quadtr.blocks.aux import DamagingRoundingError
from quadtr.blocks.tr import TrustRegionManager
from quadtr.dfo_model import LagrangeBasis
from quadtr.dfo_tr import TRModel


def shifted_sphere(x):
    c = np.arange(1, x.size + 1, dtype=float)
    return float(np.sum((x - c) ** 2))


def rosenbrock(x):
    return float(np.sum(100.0 * (x[1:] - x[:-1] ** 2) ** 2 + (1.0 - x[:-1]) ** 2))


class Counter:
    def __init__(self, fun):
        self.fun = fun
        self.calls = 0

    def __call__(self, x, *args):
        self.calls += 1
        return self.fun(x, *args)


# ---------------------------------------------------------------------------
# Convergence
# ---------------------------------------------------------------------------
def test_shifted_sphere_n5_converges():
    res = minimize(shifted_sphere, np.zeros(5), rhobeg=1.0, rhoend=1e-6)
    assert res.status is ExitStatus.SMALL_TR_RADIUS
    assert res.success
    assert_allclose(res.x, [1.0, 2.0, 3.0, 4.0, 5.0], atol=1e-4)
    assert res.fun < 1e-8
    assert res.rho == 1e-6
    assert res.nfev <= 500 * 5


@pytest.mark.parametrize("npt", [5, 7, 10])
def test_npt_variants_converge(npt):
    res = minimize(shifted_sphere, np.zeros(3), npt=npt, rhoend=1e-7)
    assert res.status is ExitStatus.SMALL_TR_RADIUS
    assert_allclose(res.x, [1.0, 2.0, 3.0], atol=1e-4)


def test_rosenbrock_2d():
    res = minimize(rosenbrock, np.array([-1.2, 1.0]), rhobeg=0.5, rhoend=1e-8, maxfun=5000)
    assert res.status is ExitStatus.SMALL_TR_RADIUS
    assert_allclose(res.x, [1.0, 1.0], atol=1e-3)


def test_extra_args_are_forwarded():
    def f(x, c):
        return float(np.sum((x - c) ** 2))

    res = minimize(f, np.zeros(2), args=(np.array([0.5, -0.5]),), rhoend=1e-7)
    assert_allclose(res.x, [0.5, -0.5], atol=1e-5)


# ---------------------------------------------------------------------------
# Invariants along a run
# ---------------------------------------------------------------------------
def test_best_value_is_monotone_and_matches_history():
    seen = []

    def cb(n, x, f, nf, tr):
        seen.append(f)
        assert_allclose(shifted_sphere(x), f)

    res = minimize(shifted_sphere, np.zeros(4), callback=cb, rhoend=1e-6)
    assert len(seen) > 0
    assert all(b <= a for a, b in zip(seen, seen[1:]))
    assert res.fun == np.min(res.fhist)
    assert_array_equal(res.x, res.xhist[np.argmin(res.fhist)])


def test_rho_never_increases(monkeypatch):
    rhos = []
    original = TrustRegionManager.reduce_rho

    def spy(self):
        out = original(self)
        rhos.append(self.rho)
        return out

    monkeypatch.setattr(TrustRegionManager, "reduce_rho", spy)
    res = minimize(shifted_sphere, np.zeros(3), rhobeg=2.0, rhoend=1e-5)
    assert res.status is ExitStatus.SMALL_TR_RADIUS
    assert all(b <= a for a, b in zip(rhos, rhos[1:]))
    assert rhos[-1] == 1e-5


def test_interpolation_holds_after_every_update(monkeypatch):
    errors = []
    original = TRModel.replace

    def spy(self, *args, **kwargs):
        original(self, *args, **kwargs)
        scale = max(1.0, float(np.max(np.abs(self.fval))))
        errors.append(self.interpolation_error() / scale)

    monkeypatch.setattr(TRModel, "replace", spy)
    minimize(rosenbrock, np.array([-1.2, 1.0, 0.5]), rhoend=1e-6, maxfun=600)
    assert len(errors) > 0
    assert max(errors) < 1e-7


def test_debug_checks_run_clean():
    with warnings.catch_warnings():
        warnings.filterwarnings("error", message="the model error", category=RuntimeWarning)
        res = minimize(shifted_sphere, np.zeros(3), debug=True, rhoend=1e-6)
    assert res.status is ExitStatus.SMALL_TR_RADIUS


def test_budget_and_history_length():
    f = Counter(rosenbrock)
    res = minimize(f, np.array([-1.2, 1.0, 0.0]), maxfun=40, maxhist=15)
    assert res.status is ExitStatus.MAXFUN_REACHED
    assert res.nfev == f.calls == 40
    assert res.xhist.shape == (15, 3)
    assert res.fhist.shape == (15,)
    assert_allclose([rosenbrock(x) for x in res.xhist], res.fhist)


def test_history_length_when_budget_not_exhausted():
    res = minimize(shifted_sphere, np.zeros(2), rhoend=1e-4)
    assert res.nfev < 1000
    assert res.xhist.shape == (res.nfev, 2)


def test_runs_are_deterministic():
    a = minimize(rosenbrock, np.array([-1.2, 1.0]), rhoend=1e-6)
    b = minimize(rosenbrock, np.array([-1.2, 1.0]), rhoend=1e-6)
    assert a.status is b.status
    assert a.nfev == b.nfev
    assert_array_equal(a.xhist, b.xhist)
    assert_array_equal(a.x, b.x)


# ---------------------------------------------------------------------------
# Exit paths
# ---------------------------------------------------------------------------
def test_maxfun_below_model_size():
    res = minimize(shifted_sphere, np.zeros(5), maxfun=4)
    assert res.status is ExitStatus.MAXFUN_REACHED
    assert res.nfev == 4
    assert res.fun == np.min(res.fhist)
    assert_array_equal(res.x, res.xhist[np.argmin(res.fhist)])


def test_ftarget_stops_early():
    full = minimize(shifted_sphere, np.zeros(3), rhoend=1e-6)
    res = minimize(shifted_sphere, np.zeros(3), rhoend=1e-6, ftarget=0.5)
    assert res.status is ExitStatus.FTARGET_ACHIEVED
    assert res.success
    assert res.fun <= 0.5
    assert res.fhist[-1] <= 0.5
    assert np.all(res.fhist[:-1] > 0.5)
    assert res.nfev < full.nfev


def test_callback_can_stop_the_run():
    calls = []

    def cb(n, x, f, nf, tr):
        calls.append(tr)
        if tr >= 3:
            return CallbackSignal.STOP
        return CallbackSignal.CONTINUE

    res = minimize(rosenbrock, np.array([-1.2, 1.0]), callback=cb)
    assert res.status is ExitStatus.CALLBACK_TERMINATE
    assert calls == [1, 2, 3]
    assert res.nit == 3
    assert np.isfinite(res.fun)


def test_maxtr_guard():
    res = minimize(rosenbrock, np.array([-1.2, 1.0]), maxtr=2)
    assert res.status is ExitStatus.MAXTR_REACHED
    assert res.nit == 2


@pytest.mark.parametrize("bad", [np.nan, np.inf])
def test_non_finite_objective(bad):
    def f(x):
        return bad if x[0] > 0.5 else shifted_sphere(x)

    res = minimize(f, np.zeros(2))
    assert res.status is ExitStatus.NAN_INF_F
    assert res.nfev == 2
    assert np.isfinite(res.fun)
    assert_array_equal(res.x, [0.0, 0.0])


def test_non_finite_trial_point():
    res = minimize(lambda x: 1.0, np.array([1e308, 0.0]), rhobeg=1e308, rhoend=1.0)
    assert res.status is ExitStatus.NAN_INF_X
    assert res.nfev == 1


def test_memory_failure_is_reported(monkeypatch):
    def fail(*args, **kwargs):
        raise MemoryError

    monkeypatch.setattr("quadtr.dfo.History", fail)
    res = minimize(shifted_sphere, np.array([1.0, np.nan]))
    assert res.status is ExitStatus.MEMORY_ALLOCATION_FAILS
    assert res.nfev == 0
    assert np.isnan(res.fun)
    assert_array_equal(res.x, [1.0, 0.0])
    assert res.xhist.shape == (0, 2)


def test_step_without_model_decrease_stops(monkeypatch):
    original = quadtr.dfo.trsapp

    def uphill(g, H, delta, maxiter=None):
        d, crvmin, status = original(g, H, delta, maxiter)
        return -d, crvmin, status

    monkeypatch.setattr("quadtr.dfo.trsapp", uphill)
    res = minimize(shifted_sphere, np.zeros(2))
    assert res.status is ExitStatus.TRSUBP_FAILED
    assert res.nfev == 5
    assert res.fun == np.min(res.fhist)


def test_untrusted_update_denominator_stops(monkeypatch):
    def refuse(self, knew, vlag, beta):
        raise DamagingRoundingError(f"denominator of point {knew}")

    monkeypatch.setattr(LagrangeBasis, "update", refuse)
    res = minimize(shifted_sphere, np.zeros(2))
    assert res.status is ExitStatus.DAMAGING_ROUNDING
    assert res.nfev > 5
    assert np.isfinite(res.fun)
    assert res.fun == np.min(res.fhist)


def test_non_finite_model_stops(monkeypatch):
    monkeypatch.setattr(TRModel, "is_finite", lambda self: False)
    res = minimize(shifted_sphere, np.zeros(2))
    assert res.status is ExitStatus.NAN_INF_MODEL
    assert res.nfev == 5
    assert_array_equal(res.x, res.xhist[np.argmin(res.fhist)])


def test_memory_failure_during_the_run(monkeypatch):
    def fail(self, *args, **kwargs):
        raise MemoryError

    monkeypatch.setattr(TRModel, "replace", fail)
    res = minimize(shifted_sphere, np.zeros(2))
    assert res.status is ExitStatus.MEMORY_ALLOCATION_FAILS
    assert res.nfev > 5
    assert res.fun == np.min(res.fhist)


def test_callback_true_stops_the_run():
    res = minimize(rosenbrock, np.array([-1.2, 1.0]), callback=lambda n, x, f, nf, tr: tr >= 2)
    assert res.status is ExitStatus.CALLBACK_TERMINATE
    assert res.nit == 2


def test_callback_false_or_none_continues():
    res = minimize(shifted_sphere, np.zeros(2), rhoend=1e-4,
                   callback=lambda n, x, f, nf, tr: np.bool_(False) if tr % 2 else None)
    assert res.status is ExitStatus.SMALL_TR_RADIUS


def test_callback_with_unknown_return_value():
    with pytest.raises(TypeError):
        minimize(shifted_sphere, np.zeros(2), callback=lambda n, x, f, nf, tr: "stop")


def test_every_status_has_a_message():
    for status in ExitStatus:
        assert isinstance(status.message, str) and status.message


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------
def test_x0_is_not_modified():
    x0 = np.zeros(3)
    res = minimize(shifted_sphere, x0, rhoend=1e-4)
    assert_array_equal(x0, 0.0)
    assert res.x is not x0


def test_x0_non_finite_entries_are_sanitized():
    with pytest.warns(RuntimeWarning):
        res = minimize(shifted_sphere, np.array([np.nan, 2.0]), maxfun=3)
    assert_array_equal(res.xhist[0], [0.0, 2.0])


@pytest.mark.parametrize(
    "fun,x0,options",
    [
        (None, np.zeros(2), {}),
        (shifted_sphere, np.zeros((2, 2)), {}),
        (shifted_sphere, np.zeros(0), {}),
        (shifted_sphere, np.zeros(2), {"npt": 3}),
        (shifted_sphere, np.zeros(2), {"npt": 7}),
        (shifted_sphere, np.zeros(2), {"rhobeg": 1e-3, "rhoend": 1e-2}),
        (shifted_sphere, np.zeros(2), {"rhobeg": -1.0}),
        (shifted_sphere, np.zeros(2), {"maxfun": 0}),
        (shifted_sphere, np.zeros(2), {"eta1": 0.8, "eta2": 0.7}),
        (shifted_sphere, np.zeros(2), {"gamma2": 0.9}),
        (shifted_sphere, np.zeros(2), {"maxhist": -1}),
        (shifted_sphere, np.zeros(2), {"rhobeg": 1.0, "delta_max": 0.5}),
    ],
)
def test_invalid_inputs_raise_before_evaluating(fun, x0, options):
    f = Counter(shifted_sphere)
    with pytest.raises(ValueError):
        minimize(f if fun is not None else None, x0, **options)
    assert f.calls == 0


def test_unknown_option():
    with pytest.raises(TypeError):
        minimize(shifted_sphere, np.zeros(2), rhostart=1.0)


def test_maxhist_is_clamped_to_memory_ceiling():
    with pytest.warns(RuntimeWarning):
        res = minimize(shifted_sphere, np.zeros(3), max_memory=8 * 4 * 10, maxfun=30)
    assert len(res.fhist) == 10


def test_values_only_history():
    res = minimize(shifted_sphere, np.zeros(3), output_xhist=False, maxfun=40, maxhist=25)
    assert res.xhist.shape == (0, 3)
    assert len(res.fhist) == min(res.nfev, 25)
    assert res.fun == np.min(res.fhist)


def test_memory_ceiling_counts_only_stored_buffers():
    # 80 bytes: two (x, f) entries at n = 3, or ten values alone
    with pytest.warns(RuntimeWarning):
        with_x = UOAConfig(maxfun=30, max_memory=8 * 10).resolve(3)
    with pytest.warns(RuntimeWarning):
        without_x = UOAConfig(maxfun=30, max_memory=8 * 10, output_xhist=False).resolve(3)
    assert with_x.maxhist == 2
    assert without_x.maxhist == 10


def test_config_defaults_resolve():
    cfg = UOAConfig().resolve(3)
    assert (cfg.maxfun, cfg.npt, cfg.maxtr, cfg.maxhist) == (1500, 7, 3000, 1500)
    with pytest.raises(dataclasses.FrozenInstanceError):
        cfg.rhobeg = 2.0


def test_solver_instances_are_independent():
    s1 = DFOSolver(shifted_sphere, np.zeros(2), UOAConfig(rhoend=1e-5))
    s2 = DFOSolver(rosenbrock, np.array([-1.2, 1.0]), UOAConfig(rhoend=1e-5))
    r1, r2 = s1.solve(), s2.solve()
    assert_allclose(r1.x, [1.0, 2.0], atol=1e-3)
    assert_allclose(r2.x, [1.0, 1.0], atol=1e-2)
    assert s1.history is not s2.history
