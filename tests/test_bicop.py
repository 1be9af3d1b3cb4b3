"""Unit tests for bivariate copulas: families, evaluation, fitting and selection."""
import math
import unittest
import warnings

import torch

import vinetorch as vt
from vinetorch import stats


class TestBicopFamily(unittest.TestCase):
    """Test BicopFamily enum and convenience lists."""

    def test_all_families_present(self):
        expected = {"indep", "gaussian", "student", "clayton", "gumbel", "frank", "joe",
                    "bb1", "bb6", "bb7", "bb8"}
        self.assertEqual({f.value for f in vt.BicopFamily}, expected)

    def test_family_shortcut_names(self):
        for f in vt.BicopFamily:
            self.assertIs(getattr(vt, f.value), f)

    def test_convenience_lists(self):
        self.assertEqual(len(vt.one_par), 5)
        self.assertEqual(len(vt.two_par), 5)
        self.assertEqual(set(vt.parametric), set(vt.one_par + vt.two_par))
        self.assertIn(vt.BicopFamily.frank, vt.rotationless)
        self.assertIn(vt.BicopFamily.bb1, vt.lt)
        self.assertIn(vt.BicopFamily.bb1, vt.ut)
        self.assertNotIn(vt.BicopFamily.bb1, vt.itau)
        self.assertEqual(len(vt.all), 11)


# Fixed parameter sets for each family
_FAMILY_PARAMS = {
    "indep": [],
    "gaussian": [0.5],
    "student": [0.5, 5.0],
    "clayton": [2.0],
    "gumbel": [2.0],
    "frank": [5.0],
    "joe": [2.0],
    "bb1": [0.5, 1.5],
    "bb6": [2.0, 2.0],
    "bb7": [2.0, 1.0],
    "bb8": [3.0, 0.6],
}


def _rotations(fam):
    return (0, 90, 180, 270) if vt.BicopFamily(fam) not in vt.rotationless else (0,)


def _grid(n=15, lo=0.05, hi=0.95):
    g = torch.linspace(lo, hi, n, dtype=torch.float64)
    a, b = torch.meshgrid(g, g, indexing="ij")
    return torch.stack([a.reshape(-1), b.reshape(-1)], dim=1)


class TestBicopAllFamilies(unittest.TestCase):
    """Test pdf/cdf/hfunc/hinv for every family and rotation."""

    def _make_bicop(self, fam, rotation=0):
        params = _FAMILY_PARAMS[fam]
        p = torch.tensor(params, dtype=torch.float64) if params else None
        return vt.Bicop(fam, rotation=rotation, parameters=p)

    def test_pdf_positive_finite(self):
        u = _grid()
        for fam in _FAMILY_PARAMS:
            for rot in _rotations(fam):
                with self.subTest(family=fam, rotation=rot):
                    pdf = self._make_bicop(fam, rot).pdf(u)
                    self.assertEqual(pdf.shape, (u.shape[0],))
                    self.assertTrue(torch.isfinite(pdf).all())
                    self.assertTrue((pdf > 0).all())

    def test_hfunc_in_unit_interval(self):
        u = _grid()
        for fam in _FAMILY_PARAMS:
            for rot in _rotations(fam):
                with self.subTest(family=fam, rotation=rot):
                    c = self._make_bicop(fam, rot)
                    for h in (c.hfunc1(u), c.hfunc2(u)):
                        self.assertTrue(((h >= 0) & (h <= 1)).all())

    def test_hinv_roundtrip(self):
        u = _grid(11, 0.1, 0.9)
        for fam in _FAMILY_PARAMS:
            for rot in _rotations(fam):
                with self.subTest(family=fam, rotation=rot):
                    c = self._make_bicop(fam, rot)
                    w1 = c.hfunc1(u)
                    u2 = c.hinv1(torch.stack([u[:, 0], w1], dim=1))
                    self.assertTrue(torch.allclose(u2, u[:, 1], atol=1e-8), f"{fam} {rot} hinv1")
                    w2 = c.hfunc2(u)
                    u1 = c.hinv2(torch.stack([w2, u[:, 1]], dim=1))
                    self.assertTrue(torch.allclose(u1, u[:, 0], atol=1e-8), f"{fam} {rot} hinv2")

    def test_cdf_margins(self):
        g = torch.linspace(0.1, 0.9, 9, dtype=torch.float64)
        one = torch.full_like(g, 1.0 - 1e-10)
        for fam in _FAMILY_PARAMS:
            for rot in _rotations(fam):
                with self.subTest(family=fam, rotation=rot):
                    c = self._make_bicop(fam, rot)
                    self.assertTrue(torch.allclose(c.cdf(torch.stack([g, one], dim=1)), g, atol=1e-3))
                    self.assertTrue(torch.allclose(c.cdf(torch.stack([one, g], dim=1)), g, atol=1e-3))

    def test_density_integrates_to_one(self):
        # normal-score space keeps the tails of the integrand smooth
        x, w = stats.gauss_legendre(200)
        z = -8.0 + 16.0 * x
        wz = 16.0 * w
        za, zb = torch.meshgrid(z, z, indexing="ij")
        u = torch.stack([stats.pnorm(za.reshape(-1)), stats.pnorm(zb.reshape(-1))], dim=1)
        weight = (wz[:, None] * wz[None, :]).reshape(-1)
        phi = stats.dnorm(za.reshape(-1)) * stats.dnorm(zb.reshape(-1))
        for fam in _FAMILY_PARAMS:
            for rot in _rotations(fam):
                with self.subTest(family=fam, rotation=rot):
                    c = self._make_bicop(fam, rot)
                    total = float((weight * c.pdf(u) * phi).sum())
                    self.assertAlmostEqual(total, 1.0, delta=1e-3)

    def test_pdf_near_upper_corner(self):
        # densities with upper tail dependence grow like 1 / (1 - u) along the diagonal
        eps = 1e-8
        u = torch.tensor([[1.0 - eps, 1.0 - eps], [1.0 - 1e-6, 1.0 - 1e-7]], dtype=torch.float64)
        for fam in ("gumbel", "joe", "bb1", "bb6", "bb7", "bb8"):
            with self.subTest(family=fam):
                pdf = self._make_bicop(fam).pdf(u)
                self.assertTrue(torch.isfinite(pdf).all())
                self.assertTrue((pdf > 0).all())
                self.assertLess(float(pdf.max()), 1e3 / eps)

    def test_hfunc1_extreme_conditioning_values(self):
        u = torch.tensor([[0.5, 1e-12], [0.5, 1.0 - 1e-12], [1e-12, 0.5], [1.0 - 1e-12, 0.5]],
                         dtype=torch.float64)
        for fam in ("clayton", "gumbel", "joe", "bb1", "bb6", "bb7", "bb8"):
            with self.subTest(family=fam):
                with warnings.catch_warnings():
                    warnings.simplefilter("ignore", vt.NumericBoundaryClamp)
                    h = self._make_bicop(fam).hfunc1(u)
                self.assertTrue(((h >= 0) & (h <= 1)).all())
                self.assertLess(float(h[0]), 1e-3)
                self.assertGreater(float(h[1]), 1.0 - 1e-3)

    def test_simulate_shape_and_range(self):
        g = torch.Generator().manual_seed(11)
        for fam in _FAMILY_PARAMS:
            with self.subTest(family=fam):
                s = self._make_bicop(fam).simulate(100, generator=g)
                self.assertEqual(s.shape, (100, 2))
                self.assertTrue(((s >= 0) & (s <= 1)).all())

    def test_simulate_matches_tau(self):
        for fam, rot in (("clayton", 0), ("gumbel", 90), ("frank", 0), ("bb1", 180)):
            with self.subTest(family=fam, rotation=rot):
                c = self._make_bicop(fam, rot)
                s = c.simulate(2000, seeds=[42])
                self.assertAlmostEqual(stats.kendall_tau(s[:, 0], s[:, 1]), c.tau, delta=0.05)

    def test_flipped_swaps_arguments(self):
        u = _grid(7)
        swapped = u[:, [1, 0]]
        for fam, rot in (("clayton", 90), ("gumbel", 270), ("bb8", 90), ("joe", 180)):
            with self.subTest(family=fam, rotation=rot):
                c = self._make_bicop(fam, rot)
                f = c.flipped()
                self.assertTrue(torch.allclose(f.pdf(swapped), c.pdf(u), rtol=1e-8))
                self.assertTrue(torch.allclose(f.hfunc1(swapped), c.hfunc2(u), atol=1e-10))


class TestBicopMethods(unittest.TestCase):

    def setUp(self):
        self.cop = vt.Bicop("gaussian", parameters=torch.tensor([0.5], dtype=torch.float64))
        self.u = self.cop.simulate(200, seeds=[1])

    def test_loglik(self):
        self.assertGreater(self.cop.loglik(self.u), 0.0)

    def test_aic_bic(self):
        ll = self.cop.loglik(self.u)
        self.assertAlmostEqual(self.cop.aic(self.u), -2 * ll + 2, places=8)
        self.assertAlmostEqual(self.cop.bic(self.u), -2 * ll + math.log(200.0), places=8)

    def test_loglik_requires_data_when_unfitted(self):
        with self.assertRaises(ValueError):
            self.cop.loglik()

    def test_npars(self):
        self.assertEqual(vt.Bicop().npars, 0)
        self.assertEqual(self.cop.npars, 1)
        self.assertEqual(vt.Bicop("bb7").get_npars(), 2)

    def test_parameters_to_tau(self):
        tau = self.cop.parameters_to_tau()
        self.assertAlmostEqual(tau, 2.0 / math.pi * math.asin(0.5), places=6)

    def test_tau_round_trip(self):
        cases = [("gaussian", 0), ("student", 0), ("clayton", 0), ("clayton", 90), ("gumbel", 180),
                 ("gumbel", 270), ("frank", 0), ("joe", 0), ("joe", 90)]
        for fam, rot in cases:
            for tau in (0.2, 0.5, 0.7):
                with self.subTest(family=fam, rotation=rot, tau=tau):
                    target = -tau if rot in (90, 270) else tau
                    c = vt.Bicop(fam, rotation=rot)
                    par = c.tau_to_parameters(target)
                    back = vt.Bicop(fam, rotation=rot, parameters=par).tau
                    self.assertAlmostEqual(back, target, delta=1e-6)

    def test_frank_negative_tau_round_trip(self):
        c = vt.Bicop("frank")
        par = c.tau_to_parameters(-0.4)
        self.assertLess(float(par[0]), 0.0)
        self.assertAlmostEqual(vt.Bicop("frank", parameters=par).tau, -0.4, delta=1e-6)

    def test_parameter_bounds(self):
        lb = self.cop.parameters_lower_bounds
        ub = self.cop.parameters_upper_bounds
        self.assertEqual(lb.tolist(), [-1.0])
        self.assertEqual(ub.tolist(), [1.0])

    def test_invalid_parameters(self):
        with self.assertRaises(vt.ParameterBoundsError):
            vt.Bicop("clayton", parameters=[-1.0])
        with self.assertRaises(vt.ParameterBoundsError):
            vt.Bicop("gaussian", parameters=[0.1, 0.2])
        with self.assertRaises(ValueError):
            vt.Bicop("gumbel", parameters=[float("nan")])

    def test_invalid_rotation(self):
        with self.assertRaises(ValueError):
            vt.Bicop("clayton", rotation=45)
        with self.assertRaises(ValueError):
            vt.Bicop("gaussian", rotation=45)

    def test_rotation_ignored_by_symmetric_families(self):
        u = _grid(7)
        for fam in ("gaussian", "student", "frank", "indep"):
            params = _FAMILY_PARAMS[fam] or None
            with self.subTest(family=fam):
                rotated = vt.Bicop(fam, rotation=90, parameters=params)
                plain = vt.Bicop(fam, parameters=params)
                self.assertEqual(rotated.rotation, 90)
                self.assertIn("90", rotated.str())
                self.assertEqual(rotated.flipped().rotation, 270)
                self.assertTrue(torch.allclose(rotated.pdf(u), plain.pdf(u), rtol=1e-12))
                self.assertTrue(torch.allclose(rotated.hfunc1(u), plain.hfunc1(u), atol=1e-12))
                self.assertAlmostEqual(rotated.tau, plain.tau, places=12)

    def test_unknown_family(self):
        with self.assertRaises(ValueError):
            vt.Bicop("tawn")

    def test_str(self):
        s = vt.Bicop("clayton", rotation=90, parameters=[1.5]).str()
        self.assertIn("clayton", s)
        self.assertIn("90", s)

    def test_triple_round_trip(self):
        c = vt.Bicop("bb8", rotation=270, parameters=[3.0, 0.6])
        triple = c.to_triple()
        self.assertEqual(triple, ("bb8", 270, [3.0, 0.6]))
        back = vt.Bicop.from_triple(triple)
        self.assertEqual(back.family, vt.BicopFamily.bb8)
        self.assertEqual(back.rotation, 270)
        self.assertTrue(torch.equal(back.parameters, c.parameters))

    def test_frozen(self):
        with self.assertRaises(Exception):
            self.cop.rotation = 90


class TestBicopFitSelect(unittest.TestCase):
    """Test fitting and selection."""

    def test_fit_gaussian_itau(self):
        true = vt.Bicop("gaussian", parameters=[0.6])
        u = true.simulate(1000, seeds=[2])
        fitted = vt.Bicop("gaussian").fit(u, vt.FitControlsBicop(parametric_method="itau"))
        tau = stats.kendall_tau(u[:, 0], u[:, 1])
        self.assertAlmostEqual(float(fitted.parameters[0]), math.sin(tau * math.pi / 2),
                               places=8)
        self.assertEqual(fitted.nobs, 1000)

    def test_fit_clayton_mle(self):
        true = vt.Bicop("clayton", parameters=[2.0])
        u = true.simulate(1000, seeds=[3])
        fitted = vt.Bicop("clayton").fit(u)
        self.assertAlmostEqual(fitted.tau, true.tau, delta=0.05)
        self.assertTrue(fitted.converged)
        self.assertAlmostEqual(fitted.loglik(), fitted.loglik(u), places=6)

    def test_fit_rotated_two_parameter(self):
        true = vt.Bicop("bb1", rotation=90, parameters=[0.5, 1.5])
        u = true.simulate(1000, seeds=[4])
        fitted = vt.Bicop("bb1", rotation=90).fit(u)
        self.assertEqual(fitted.rotation, 90)
        self.assertAlmostEqual(fitted.tau, true.tau, delta=0.06)

    def test_fit_student_itau_profiles_nu(self):
        true = vt.Bicop("student", parameters=[0.5, 4.0])
        u = true.simulate(1000, seeds=[5])
        fitted = vt.Bicop("student").fit(u, vt.FitControlsBicop(parametric_method="itau"))
        self.assertAlmostEqual(float(fitted.parameters[0]), 0.5, delta=0.07)
        self.assertLess(float(fitted.parameters[1]), 15.0)

    def test_itau_rejects_unsupported_family(self):
        u = vt.Bicop("gaussian", parameters=[0.3]).simulate(100, seeds=[0])
        with self.assertRaises(ValueError):
            vt.Bicop("bb1").fit(u, vt.FitControlsBicop(parametric_method="itau"))

    def test_fit_rejects_boundary_data(self):
        u = torch.tensor([[0.0, 0.5], [0.3, 0.4]], dtype=torch.float64)
        with self.assertRaises(ValueError):
            vt.Bicop("clayton").fit(u)
        with self.assertRaises(ValueError):
            vt.Bicop.from_data(u)

    def test_select_recovers_family_and_rotation(self):
        controls = vt.FitControlsBicop(family_set=["gaussian", "clayton", "gumbel", "frank"])
        for rot in (0, 90, 180, 270):
            with self.subTest(rotation=rot):
                true = vt.Bicop("clayton", rotation=rot, parameters=[3.0])
                u = true.simulate(1000, seeds=[10 + rot])
                sel = vt.Bicop.from_data(u, controls)
                self.assertEqual(sel.family, vt.BicopFamily.clayton)
                self.assertEqual(sel.rotation, rot)
                self.assertAlmostEqual(sel.tau, true.tau, delta=0.05)

    def test_select_default_family_set_recovery(self):
        cases = [
            ("clayton", 0, [2.0]),
            ("clayton", 90, [2.0]),
            ("gumbel", 0, [2.0]),
            ("gumbel", 180, [1.8]),
            ("gumbel", 270, [2.5]),
            ("joe", 0, [2.5]),
            ("joe", 90, [2.0]),
            ("frank", 0, [5.0]),
            ("gaussian", 0, [0.6]),
            ("student", 0, [0.5, 4.0]),
        ]
        hits = 0
        for i, (fam, rot, params) in enumerate(cases):
            true = vt.Bicop(fam, rotation=rot, parameters=params)
            u = true.simulate(2000, seeds=[100 + i]).clamp(1e-10, 1.0 - 1e-10)
            sel = vt.Bicop.select(u)
            if sel.family == true.family and sel.rotation == rot:
                hits += 1
                with self.subTest(family=fam, rotation=rot):
                    self.assertAlmostEqual(sel.tau, true.tau, delta=0.05)
        self.assertGreaterEqual(hits, math.ceil(0.9 * len(cases)))

    def test_mle_not_worse_than_truth(self):
        for fam, rot, params in (("clayton", 90, [2.0]), ("gumbel", 0, [1.5]), ("frank", 0, [-4.0])):
            with self.subTest(family=fam, rotation=rot):
                true = vt.Bicop(fam, rotation=rot, parameters=params)
                u = true.simulate(1000, seeds=[21]).clamp(1e-10, 1.0 - 1e-10)
                fitted = vt.Bicop(fam, rotation=rot).fit(u)
                self.assertGreaterEqual(fitted.loglik(u), true.loglik(u) - 1e-6)

    def test_select_independence(self):
        u = vt.simulate_uniform(2000, 2, seeds=[9])
        controls = vt.FitControlsBicop(family_set=["indep", "gaussian", "frank"])
        sel = vt.Bicop.select(u, controls)
        self.assertEqual(sel.family, vt.BicopFamily.indep)

    def test_select_itau_filters_families(self):
        u = vt.Bicop("gumbel", parameters=[2.0]).simulate(500, seeds=[6])
        controls = vt.FitControlsBicop(family_set=["gumbel", "bb1"], parametric_method="itau")
        sel = vt.Bicop.select(u, controls)
        self.assertEqual(sel.family, vt.BicopFamily.gumbel)


if __name__ == "__main__":
    unittest.main()
