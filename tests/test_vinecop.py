"""Unit tests for vine copula models."""
import math
import unittest

import torch

import vinetorch as vt
from vinetorch import stats

_CVINE = [[1, 1, 1, 1],
          [2, 2, 2, 0],
          [3, 3, 0, 0],
          [4, 0, 0, 0]]


def _dvine3_model():
    pcs = [
        [vt.Bicop("clayton", rotation=90, parameters=[2.0]), vt.Bicop("gumbel", parameters=[1.8])],
        [vt.Bicop("joe", rotation=270, parameters=[1.6])],
    ]
    return vt.Vinecop.from_structure(matrix=[[2, 1, 1], [1, 2, 0], [3, 0, 0]], pair_copulas=pcs)


def _dvine5_model():
    s = vt.RVineStructure.dvine([1, 2, 3, 4, 5])
    pcs = [
        [vt.Bicop("gaussian", parameters=[0.7]), vt.Bicop("clayton", rotation=180, parameters=[2.0]),
         vt.Bicop("gumbel", rotation=90, parameters=[1.5]), vt.Bicop("frank", parameters=[3.0])],
        [vt.Bicop("joe", parameters=[1.4]), vt.Bicop("gaussian", parameters=[-0.3]),
         vt.Bicop("bb1", parameters=[0.4, 1.3])],
        [vt.Bicop("clayton", parameters=[1.0]), vt.Bicop("student", parameters=[0.2, 8.0])],
        [vt.Bicop("gumbel", rotation=180, parameters=[1.3])],
    ]
    return vt.Vinecop(s, pair_copulas=pcs)


def _cvine4_model():
    pcs = [
        [vt.Bicop("gaussian", parameters=[0.6]), vt.Bicop("clayton", parameters=[1.5]),
         vt.Bicop("frank", parameters=[4.0])],
        [vt.Bicop("gumbel", rotation=180, parameters=[1.5]), vt.Bicop("student", parameters=[0.3, 6.0])],
        [vt.Bicop("bb8", rotation=90, parameters=[3.0, 0.6])],
    ]
    return vt.Vinecop.from_structure(matrix=_CVINE, pair_copulas=pcs)


def _rvine5_model():
    # neither a C- nor a D-vine: tree 1 reads hfunc1 outputs
    matrix = [[2, 3, 2, 1, 1],
              [1, 2, 1, 2, 0],
              [3, 1, 3, 0, 0],
              [4, 4, 0, 0, 0],
              [5, 0, 0, 0, 0]]
    s = vt.RVineStructure(matrix)
    fams = [("gaussian", 0, [0.5]), ("clayton", 0, [1.2]), ("gumbel", 180, [1.4]), ("frank", 0, [3.0]),
            ("joe", 90, [1.5])]
    pcs = []
    k = 0
    for t in range(4):
        row = []
        for _ in range(4 - t):
            row.append(vt.Bicop.from_triple(fams[k % len(fams)]))
            k += 1
        pcs.append(row)
    return vt.Vinecop(s, pair_copulas=pcs)


class TestVinecopBasics(unittest.TestCase):

    def test_from_dimension_is_independent(self):
        vc = vt.Vinecop.from_dimension(3)
        u = vt.simulate_uniform(50, 3, seeds=[1])
        self.assertTrue(torch.allclose(vc.pdf(u), torch.ones(50, dtype=torch.float64)))
        self.assertAlmostEqual(vc.loglik(u), 0.0, places=12)
        self.assertEqual(vc.families, [["indep", "indep"], ["indep"]])

    def test_independence_criteria(self):
        vc = vt.Vinecop.from_structure(matrix=_CVINE)
        u = vt.simulate_uniform(100, 4, seeds=[2])
        ll = vc.loglik(u)
        self.assertEqual(vc.npars, 0)
        self.assertAlmostEqual(vc.aic(u), -2 * ll)
        self.assertAlmostEqual(vc.bic(u), -2 * ll)

    def test_bivariate_matches_bicop(self):
        cop = vt.Bicop("clayton", rotation=90, parameters=[2.5])
        vc = vt.Vinecop.from_structure(matrix=[[2, 2], [1, 0]], pair_copulas=[[cop]])
        u = vt.simulate_uniform(100, 2, seeds=[3])
        self.assertTrue(torch.allclose(vc.pdf(u), cop.pdf(u), rtol=1e-12))

    def test_dvine3_density_by_hand(self):
        vc = _dvine3_model()
        c00, c01 = vc.pair_copulas[0]
        c10 = vc.pair_copulas[1][0]
        u = vt.simulate_uniform(200, 3, seeds=[4])
        u1, u2, u3 = u[:, 0], u[:, 1], u[:, 2]
        a = torch.stack([u3, u2], dim=1)
        b = torch.stack([u2, u1], dim=1)
        expected = c00.pdf(a) * c01.pdf(b) * c10.pdf(torch.stack([c00.hfunc2(a), c01.hfunc1(b)], dim=1))
        self.assertTrue(torch.allclose(vc.pdf(u), expected, rtol=1e-10))

    def test_grid_shape_checked(self):
        s = vt.RVineStructure.from_dimension(3)
        with self.assertRaises(ValueError):
            vt.Vinecop(s, pair_copulas=[[vt.Bicop()]])
        with self.assertRaises(ValueError):
            vt.Vinecop(s, pair_copulas=[[vt.Bicop()], [vt.Bicop(), vt.Bicop()]])

    def test_from_structure_requires_structure(self):
        with self.assertRaises(ValueError):
            vt.Vinecop.from_structure()

    def test_invalid_matrix(self):
        with self.assertRaises(vt.StructuralError):
            vt.Vinecop.from_structure(matrix=[[1, 1, 1], [1, 2, 0], [3, 0, 0]])

    def test_pdf_wrong_columns(self):
        with self.assertRaises(ValueError):
            vt.Vinecop.from_dimension(3).pdf(torch.full((4, 2), 0.5))

    def test_accessors(self):
        vc = _cvine4_model()
        self.assertEqual(vc.dim, 4)
        self.assertEqual(vc.order, [4, 3, 2, 1])
        self.assertEqual(vc.matrix.tolist(), _CVINE)
        self.assertEqual(vc.rotations[1], [180, 0])
        self.assertEqual(vc.families[2], ["bb8"])
        self.assertEqual(vc.npars, 1 + 1 + 1 + 1 + 2 + 2)
        self.assertAlmostEqual(vc.taus[0][0], 2.0 / math.pi * math.asin(0.6), places=6)
        self.assertIs(vc.get_pair_copula(1, 1), vc.pair_copulas[1][1])
        self.assertIn("bb8", vc.str())

    def test_triples_round_trip(self):
        vc = _cvine4_model()
        back = vt.Vinecop.from_structure(matrix=vc.matrix, pair_copulas=vc.triples)
        self.assertEqual(back.triples, vc.triples)
        u = vt.simulate_uniform(30, 4, seeds=[5])
        self.assertTrue(torch.allclose(back.pdf(u), vc.pdf(u)))


class TestVinecopTransforms(unittest.TestCase):

    def _models(self):
        return {"dvine3": _dvine3_model(), "dvine5": _dvine5_model(), "cvine4": _cvine4_model(),
                "rvine5": _rvine5_model()}

    def test_rosenblatt_inverse_roundtrip(self):
        for name, vc in self._models().items():
            with self.subTest(model=name):
                w = vt.simulate_uniform(300, vc.dim, seeds=[6]).clamp(0.01, 0.99)
                u = vc.inverse_rosenblatt(w)
                self.assertTrue(torch.allclose(vc.rosenblatt(u), w, atol=1e-6))

    def test_dvine3_inverse_rosenblatt_by_hand(self):
        vc = _dvine3_model()
        c00, c01 = vc.pair_copulas[0]
        c10 = vc.pair_copulas[1][0]
        w = vt.simulate_uniform(100, 3, seeds=[5]).clamp(0.01, 0.99)
        w1, w2, w3 = w[:, 0], w[:, 1], w[:, 2]
        u1 = w1
        u2 = c01.hinv2(torch.stack([w2, u1], dim=1))
        u1_given_u2 = c01.hfunc1(torch.stack([u2, u1], dim=1))
        u3_given_u2 = c10.hinv2(torch.stack([w3, u1_given_u2], dim=1))
        u3 = c00.hinv2(torch.stack([u3_given_u2, u2], dim=1))
        expected = torch.stack([u1, u2, u3], dim=1)
        self.assertTrue(torch.allclose(vc.inverse_rosenblatt(w), expected, atol=1e-10))

    def test_simulate_default_dvine(self):
        for d in (2, 3, 4, 6):
            with self.subTest(dim=d):
                u = vt.Vinecop.from_dimension(d).simulate(5, seeds=[1])
                self.assertEqual(u.shape, (5, d))
                self.assertTrue(((u >= 0) & (u <= 1)).all())

    def test_rosenblatt_decorrelates(self):
        for name, vc in self._models().items():
            with self.subTest(model=name):
                u = vc.simulate(2000, seeds=[7])
                w = vc.rosenblatt(u)
                for i in range(vc.dim):
                    for j in range(i):
                        self.assertLess(abs(stats.kendall_tau(w[:, i], w[:, j])), 0.06)

    def test_simulate_reproduces_pair_taus(self):
        vc = _cvine4_model()
        u = vc.simulate(3000, generator=torch.Generator().manual_seed(8))
        # tree-0 edges are unconditional pairs
        for e in range(3):
            a, b = vc.structure.conditioned(0, e)
            with self.subTest(edge=e):
                tau = stats.kendall_tau(u[:, a - 1], u[:, b - 1])
                self.assertAlmostEqual(tau, vc.taus[0][e], delta=0.05)

    def test_simulate_reproducible(self):
        vc = _dvine3_model()
        a = vc.simulate(50, seeds=[9])
        b = vc.simulate(50, seeds=[9])
        self.assertTrue(torch.equal(a, b))
        self.assertEqual(a.shape, (50, 3))
        self.assertTrue(((a >= 0) & (a <= 1)).all())

    def test_simulate_leaves_global_rng(self):
        state = torch.get_rng_state()
        _dvine3_model().simulate(20, generator=torch.Generator().manual_seed(0))
        self.assertTrue(torch.equal(state, torch.get_rng_state()))

    def test_cdf_monte_carlo(self):
        vc = vt.Vinecop.from_dimension(2)
        p = vc.cdf(torch.tensor([[0.5, 0.5], [0.2, 0.9]], dtype=torch.float64), n_mc=20000, seeds=[10])
        self.assertAlmostEqual(float(p[0]), 0.25, delta=0.02)
        self.assertAlmostEqual(float(p[1]), 0.18, delta=0.02)


class TestVinecopCriteria(unittest.TestCase):

    def test_mbicv_of_independence_model(self):
        d = 4
        vc = vt.Vinecop.from_dimension(d)
        u = vt.simulate_uniform(100, d, seeds=[11])
        psi0 = 0.9
        expected = -2.0 * sum((d - t - 1) * math.log(1.0 - psi0 ** (t + 1)) for t in range(d - 1))
        self.assertAlmostEqual(vc.mbicv(u, psi0=psi0), expected, places=8)

    def test_mbicv_penalty_grows_with_parameters(self):
        vc = _cvine4_model()
        self.assertGreater(vc.calculate_mbicv_penalty(1000, 0.9),
                           vt.Vinecop.from_dimension(4).calculate_mbicv_penalty(1000, 0.9))
        with self.assertRaises(ValueError):
            vc.calculate_mbicv_penalty(1000, 1.5)

    def test_loglik_requires_data_when_unfitted(self):
        with self.assertRaises(ValueError):
            _dvine3_model().loglik()


class TestVinecopTruncateFit(unittest.TestCase):

    def test_truncate(self):
        vc = _cvine4_model()
        tr = vc.truncate(1)
        self.assertEqual(tr.trunc_lvl, 1)
        self.assertEqual(tr.families[1], ["indep", "indep"])
        self.assertEqual(tr.families[2], ["indep"])
        self.assertEqual(tr.families[0], vc.families[0])
        u = vt.simulate_uniform(100, 4, seeds=[12])
        expected = torch.ones(100, dtype=torch.float64)
        for e in range(3):
            a, b = vc.structure.conditioned(0, e)
            expected = expected * vc.pair_copulas[0][e].pdf(torch.stack([u[:, a - 1], u[:, b - 1]], dim=1))
        self.assertTrue(torch.allclose(tr.pdf(u), expected, rtol=1e-10))
        # the source model is unchanged
        self.assertEqual(vc.trunc_lvl, 3)

    def test_trunc_lvl_rejects_dependent_trees(self):
        vc = _cvine4_model()
        with self.assertRaises(ValueError):
            vt.Vinecop(vc.structure, pair_copulas=vc.pair_copulas, trunc_lvl=1)

    def test_fit_recovers_parameters(self):
        true = _dvine3_model()
        u = true.simulate(1500, seeds=[13]).clamp(1e-10, 1.0 - 1e-10)
        start = vt.Vinecop(true.structure, pair_copulas=[
            [vt.Bicop("clayton", rotation=90), vt.Bicop("gumbel")],
            [vt.Bicop("joe", rotation=270)],
        ])
        fitted = start.fit(u, vt.FitControlsBicop(num_threads=2))
        self.assertEqual(fitted.families, true.families)
        self.assertEqual(fitted.rotations, true.rotations)
        for t in range(2):
            for e in range(2 - t):
                with self.subTest(tree=t, edge=e):
                    self.assertAlmostEqual(fitted.taus[t][e], true.taus[t][e], delta=0.06)
        self.assertEqual(fitted.nobs, 1500)
        self.assertAlmostEqual(fitted.loglik(), fitted.loglik(u), places=8)
        self.assertGreater(fitted.loglik(), 0.0)

    def test_select_families_on_fixed_structure(self):
        true = _dvine3_model()
        u = true.simulate(1500, seeds=[14]).clamp(1e-10, 1.0 - 1e-10)
        controls = vt.FitControlsBicop(family_set=["indep", "gaussian", "clayton", "gumbel", "frank"])
        sel = vt.Vinecop(true.structure).select_families(u, controls)
        self.assertEqual(sel.matrix.tolist(), true.matrix.tolist())
        self.assertEqual(sel.families[0][0], "clayton")
        self.assertEqual(sel.rotations[0][0], 90)
        self.assertNotEqual(sel.families[0][1], "indep")
        self.assertAlmostEqual(sel.taus[0][1], true.taus[0][1], delta=0.06)
        self.assertLess(sel.aic(), vt.Vinecop(true.structure).aic(u))

    def test_fit_rejects_boundary_data(self):
        u = torch.full((10, 3), 0.5, dtype=torch.float64)
        u[0, 1] = 1.0
        with self.assertRaises(ValueError):
            _dvine3_model().fit(u)


if __name__ == "__main__":
    unittest.main()
