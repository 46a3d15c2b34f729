import jax
import jax.numpy as jnp
import pytest

from omnigraph.core.math3d import (
    compose_frames,
    from_frame,
    quat_mul,
    quat_conj,
    quat_to_rot,
    quat_to_rotvec,
    relative_frame,
    rotvec_to_quat,
    to_frame,
)


def test_quat_to_rot_is_a_rotation():
    q = rotvec_to_quat(jnp.array([0.3, -0.7, 0.2]))
    R = quat_to_rot(q)
    assert jnp.allclose(R.T @ R, jnp.eye(3), atol=1e-12)
    assert float(jnp.linalg.det(R)) == pytest.approx(1.0, abs=1e-12)


def test_quarter_turn_about_z():
    R = quat_to_rot(rotvec_to_quat(jnp.array([0.0, 0.0, jnp.pi / 2])))
    assert jnp.allclose(R @ jnp.array([1.0, 0.0, 0.0]), jnp.array([0.0, 1.0, 0.0]), atol=1e-12)


def test_rotvec_quat_roundtrip():
    for w in (jnp.array([0.1, -0.05, 0.02]), jnp.array([1.2, 0.4, -2.0]), jnp.zeros(3)):
        w_est = quat_to_rotvec(rotvec_to_quat(w))
        assert jnp.all(jnp.isfinite(w_est))
        assert jnp.allclose(w_est, w, atol=1e-9)


def test_quat_mul_matches_rotation_composition():
    p = rotvec_to_quat(jnp.array([0.2, 0.1, -0.3]))
    q = rotvec_to_quat(jnp.array([-0.4, 0.5, 0.1]))
    assert jnp.allclose(quat_to_rot(quat_mul(p, q)), quat_to_rot(p) @ quat_to_rot(q), atol=1e-12)
    assert jnp.allclose(quat_mul(q, quat_conj(q)), jnp.array([1.0, 0.0, 0.0, 0.0]), atol=1e-12)


def test_to_frame_inverts_from_frame(make_frame):
    F = make_frame([1.0, -2.0, 0.5], [0.9, 0.1, -0.3, 0.2])
    pts = jnp.array([[0.0, 0.0, 1.0], [2.0, -1.0, 3.0]])
    local = to_frame(F, pts)
    assert local.shape == (2, 3)
    assert jnp.allclose(from_frame(F, local), pts, atol=1e-12)


def test_to_frame_jacobians_match_autodiff(make_frame):
    # deliberately non-unit quaternion: the closed form holds for any q
    F = jnp.array([0.3, -0.1, 0.2, 0.95, 0.12, -0.2, 0.05])
    p = jnp.array([1.5, 0.7, -2.0])

    _, J_f, J_p = to_frame(F, p, jacobians=True)

    J_f_ad = jax.jacfwd(lambda f: to_frame(f, p))(F)
    J_p_ad = jax.jacfwd(lambda x: to_frame(F, x))(p)
    assert J_f.shape == (3, 7)
    assert jnp.allclose(J_f, J_f_ad, atol=1e-10)
    assert jnp.allclose(J_p, J_p_ad, atol=1e-10)


def test_relative_frame_undoes_composition(make_frame):
    F = make_frame([1.0, 2.0, 3.0], [0.8, 0.2, 0.1, -0.3])
    G = make_frame([0.5, 0.0, -0.2], [0.9, -0.1, 0.3, 0.1])
    rel = relative_frame(F, compose_frames(F, G))
    assert jnp.allclose(rel, G, atol=1e-12)
