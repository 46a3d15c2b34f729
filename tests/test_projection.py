import jax
import jax.numpy as jnp
import pytest

from omnigraph.core.errors import UnsupportedOperationError
from omnigraph.core.math3d import frame_identity, to_frame
from omnigraph.slam.ahm import ahm_to_euclidean
from omnigraph.slam.projection import (
    back_project_omni,
    is_visible,
    omni_cam,
    project_ahm_into_omni_on_robot,
    project_euc_into_omni_on_robot,
)

K = jnp.array([318.0, 242.0, 1.02, 0.01, -0.015])
A = jnp.array([210.0, -12.0, 3.0])


@pytest.fixture
def rig(make_frame):
    Rf = make_frame([0.1, -0.2, 0.05], [0.99, 0.03, -0.05, 0.02])
    Sf = make_frame([0.05, 0.0, 0.1], [0.995, -0.02, 0.04, 0.01])
    return Rf, Sf


def test_on_axis_point_hits_principal_point():
    """Identity robot and sensor, unit affine, point straight ahead."""
    I = frame_identity() * 1.0
    k = jnp.array([320.0, 240.0, 1.0, 0.0, 0.0])
    p = jnp.array([0.0, 0.0, 1.0])
    for a in (jnp.zeros(1), jnp.array([1.0]), A):
        proj = project_euc_into_omni_on_robot(I, I, k, a, p)
        assert jnp.allclose(proj.u, jnp.array([320.0, 240.0]), atol=1e-6)
        assert float(proj.s) == pytest.approx(1.0)


def test_jacobians_refused_for_stacked_points():
    I = frame_identity() * 1.0
    k = jnp.array([320.0, 240.0, 1.0, 0.0, 0.0])
    a = jnp.array([200.0])
    pts = jnp.array([[0.0, 0.0, 1.0], [0.5, -0.2, 2.0]])

    with pytest.raises(UnsupportedOperationError):
        project_euc_into_omni_on_robot(I, I, k, a, pts, jacobians=True)

    proj = project_euc_into_omni_on_robot(I, I, k, a, pts)
    assert proj.u.shape == (2, 2)
    assert proj.s.shape == (2,)
    assert proj.U_r is None

    # same for anchored points
    ls = jnp.array([[0.0, 0.0, 0.0, 0.0, 0.0, 1.0, 1.0], [0.0, 0.0, 0.0, 0.2, 0.1, 1.0, 0.5]])
    with pytest.raises(NotImplementedError):
        project_ahm_into_omni_on_robot(I, I, k, a, ls, jacobians=True)
    assert project_ahm_into_omni_on_robot(I, I, k, a, ls).u.shape == (2, 2)


def test_stacked_projection_matches_single_point(rig):
    Rf, Sf = rig
    pts = jnp.array([[0.3, -0.2, 2.5], [-0.4, 0.1, 3.0], [0.0, 0.6, 1.5]])
    stacked = project_euc_into_omni_on_robot(Rf, Sf, K, A, pts)
    for i in range(3):
        single = project_euc_into_omni_on_robot(Rf, Sf, K, A, pts[i], jacobians=True)
        assert jnp.allclose(stacked.u[i], single.u, atol=1e-9)
        assert float(stacked.s[i]) == pytest.approx(float(single.s))


def test_euclidean_jacobians_match_finite_differences(rig, num_jac):
    Rf, Sf = rig
    p = jnp.array([0.3, -0.2, 2.5])
    proj = project_euc_into_omni_on_robot(Rf, Sf, K, A, p, jacobians=True)

    def pix(Rf=Rf, Sf=Sf, k=K, a=A, p=p):
        return project_euc_into_omni_on_robot(Rf, Sf, k, a, p).u

    def depth(Rf=Rf, Sf=Sf, p=p):
        return project_euc_into_omni_on_robot(Rf, Sf, K, A, p).s

    checks = [
        (proj.U_r, num_jac(lambda x: pix(Rf=x), Rf)),
        (proj.U_s, num_jac(lambda x: pix(Sf=x), Sf)),
        (proj.U_k, num_jac(lambda x: pix(k=x), K)),
        (proj.U_d, num_jac(lambda x: pix(a=x), A)),
        (proj.U_l, num_jac(lambda x: pix(p=x), p)),
        (proj.S_r, num_jac(lambda x: depth(Rf=x), Rf)),
        (proj.S_s, num_jac(lambda x: depth(Sf=x), Sf)),
        (proj.S_l, num_jac(lambda x: depth(p=x), p)),
    ]
    for analytic, numeric in checks:
        assert analytic.shape == numeric.shape
        assert jnp.allclose(analytic, numeric, rtol=1e-4, atol=1e-5)


def test_ahm_jacobians_match_finite_differences(rig, num_jac):
    Rf, Sf = rig
    l = jnp.array([0.2, 0.1, -0.1, 0.1, -0.05, 0.9, 0.4])
    proj = project_ahm_into_omni_on_robot(Rf, Sf, K, A, l, jacobians=True)

    euc = project_euc_into_omni_on_robot(Rf, Sf, K, A, ahm_to_euclidean(l))
    assert jnp.allclose(proj.u, euc.u, atol=1e-9)

    U_l = num_jac(lambda x: project_ahm_into_omni_on_robot(Rf, Sf, K, A, x).u, l)
    S_l = num_jac(lambda x: project_ahm_into_omni_on_robot(Rf, Sf, K, A, x).s, l)
    U_r = num_jac(lambda x: project_ahm_into_omni_on_robot(x, Sf, K, A, l).u, Rf)
    assert proj.U_l.shape == (2, 7)
    assert jnp.allclose(proj.U_l, U_l, rtol=1e-4, atol=1e-5)
    assert jnp.allclose(proj.S_l, S_l, rtol=1e-4, atol=1e-5)
    assert jnp.allclose(proj.U_r, U_r, rtol=1e-4, atol=1e-5)


def test_omni_cam_jacobian_matches_autodiff():
    p = jnp.array([0.4, -0.3, 1.2])
    _, _, U_p, S_p, U_k, U_a = omni_cam(p, K, A, jacobians=True)
    assert jnp.allclose(U_p, jax.jacfwd(lambda x: omni_cam(x, K, A)[0])(p), atol=1e-9)
    assert jnp.allclose(S_p[0], jax.grad(lambda x: omni_cam(x, K, A)[1])(p), atol=1e-12)
    assert jnp.allclose(U_a, jax.jacfwd(lambda a: omni_cam(p, K, a)[0])(A), atol=1e-9)


def test_back_projection_inverts_projection(rig):
    Rf, Sf = rig
    p = jnp.array([0.8, -0.5, 2.0])
    u = project_euc_into_omni_on_robot(Rf, Sf, K, A, p).u
    ray = back_project_omni(u, K, A)

    local = to_frame(Sf, to_frame(Rf, p))
    assert float(jnp.linalg.norm(ray)) == pytest.approx(1.0)
    assert jnp.allclose(ray, local / jnp.linalg.norm(local), atol=1e-8)


def test_back_projection_beyond_hemisphere():
    """Omni cameras see rays pointing slightly backwards."""
    a = jnp.array([150.0])
    k = jnp.array([320.0, 240.0, 1.0, 0.0, 0.0])
    m = jnp.array([0.9, 0.0, -0.2])
    m = m / jnp.linalg.norm(m)
    u, _ = omni_cam(m, k, a)
    assert jnp.allclose(back_project_omni(u, k, a), m, atol=1e-8)


def test_back_projection_needs_nonzero_a0():
    k = jnp.array([320.0, 240.0, 1.0, 0.0, 0.0])
    with pytest.raises(ValueError):
        back_project_omni(jnp.array([330.0, 250.0]), k, jnp.zeros(1))
    with pytest.raises(ValueError):
        back_project_omni(jnp.array([330.0, 250.0]), k, jnp.array([0.0, 5.0]))


def test_visibility():
    I = frame_identity() * 1.0
    k = jnp.array([320.0, 240.0, 1.0, 0.0, 0.0])
    a = jnp.array([200.0])
    size = (640, 480)

    ahead = project_euc_into_omni_on_robot(I, I, k, a, jnp.array([0.2, 0.1, 3.0]))
    assert is_visible(ahead.u, ahead.s, size)

    # straight behind: the stereographic model is singular there
    behind = project_euc_into_omni_on_robot(I, I, k, a, jnp.array([0.0, 0.0, -3.0]))
    assert not is_visible(behind.u, behind.s, size)

    # far to the side: lands outside the image
    side = project_euc_into_omni_on_robot(I, I, k, a, jnp.array([3.0, 0.0, -2.0]))
    assert float(side.u[0]) > 640.0
    assert not is_visible(side.u, side.s, size)

    assert not is_visible(jnp.array([10.0, 10.0]), -1.0, size)
