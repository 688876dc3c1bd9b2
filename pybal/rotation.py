import numpy as np
from scipy.spatial.transform import Rotation


# quaternion: [x, y, z, w]

def _check_last_axis(a: np.ndarray, size: int, name: str) -> np.ndarray:
    a = np.asarray(a, dtype=np.float64)
    if a.ndim not in (1, 2) or a.shape[-1] != size:
        raise ValueError(f"{name} must have shape ({size},) or (N, {size})")
    return a


def quaternion_to_rotation_matrix(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion(s) to rotation matrices.

    Args:
        q: Quaternion [x, y, z, w], shape (4,) or (N, 4); need not be unit

    Returns:
        rotation matrix, shape (3, 3) or (N, 3, 3)
    """
    q = _check_last_axis(q, 4, "q")
    norm = np.linalg.norm(q, axis=-1, keepdims=True)
    q = np.where(norm > 0, q / np.where(norm > 0, norm, 1.0), q)
    x, y, z, w = np.moveaxis(q, -1, 0)

    R = np.empty(q.shape[:-1] + (3, 3))
    R[..., 0, 0] = 1 - 2 * (y * y + z * z)
    R[..., 0, 1] = 2 * (x * y - z * w)
    R[..., 0, 2] = 2 * (x * z + y * w)
    R[..., 1, 0] = 2 * (x * y + z * w)
    R[..., 1, 1] = 1 - 2 * (x * x + z * z)
    R[..., 1, 2] = 2 * (y * z - x * w)
    R[..., 2, 0] = 2 * (x * z - y * w)
    R[..., 2, 1] = 2 * (y * z + x * w)
    R[..., 2, 2] = 1 - 2 * (x * x + y * y)
    return R


def quaternion_to_angle_axis(q: np.ndarray) -> np.ndarray:
    """
    Convert quaternion(s) to angle-axis. The rotation angle lies in [0, pi].

    Args:
        q: Quaternion [x, y, z, w], shape (4,) or (N, 4)

    Returns:
        Angle-axis, shape (3,) or (N, 3); magnitude is the angle in radians
    """
    q = _check_last_axis(q, 4, "q")
    norm = np.linalg.norm(q, axis=-1, keepdims=True)
    q = q / np.where(norm > 0, norm, 1.0)
    # q and -q are the same rotation; w >= 0 keeps the angle in [0, pi]
    q = np.where(q[..., 3:] < 0, -q, q)
    xyz, w = q[..., :3], q[..., 3:]

    sin_half_angle = np.linalg.norm(xyz, axis=-1, keepdims=True)
    small = sin_half_angle < 1e-12
    angle = 2.0 * np.arctan2(sin_half_angle, w)
    # first order below the threshold: angle * axis ~= 2 * xyz / w
    scale = np.where(small, 2.0 / np.where(w > 0, w, 1.0), angle / np.where(small, 1.0, sin_half_angle))
    return xyz * scale


def angle_axis_to_quaternion(angle_axis: np.ndarray) -> np.ndarray:
    """
    Convert angle-axis to quaternion(s) with w >= 0.

    Args:
        angle_axis: shape (3,) or (N, 3), magnitude is the angle in radians

    Returns:
        Quaternion [x, y, z, w], shape (4,) or (N, 4)
    """
    angle_axis = _check_last_axis(angle_axis, 3, "angle_axis")
    angle = np.linalg.norm(angle_axis, axis=-1, keepdims=True)
    small = angle < 1e-12
    half_angle = 0.5 * angle
    sinc = np.where(small, 0.5, np.sin(half_angle) / np.where(small, 1.0, angle))
    q = np.concatenate([sinc * angle_axis, np.cos(half_angle)], axis=-1)
    return np.where(q[..., 3:] < 0, -q, q)


def so3_exp(phi: np.ndarray) -> np.ndarray:
    """
    Exponential map so(3) -> SO(3).

    Args:
        phi: rotation vector(s), shape (3,) or (N, 3)

    Returns:
        rotation matrix, shape (3, 3) or (N, 3, 3)
    """
    return Rotation.from_rotvec(np.asarray(phi, dtype=np.float64)).as_matrix()


def so3_log(R: np.ndarray) -> np.ndarray:
    """
    Logarithm map SO(3) -> so(3), rotation angle in [0, pi].

    Args:
        R: rotation matrix (3, 3) or stack (N, 3, 3)

    Returns:
        rotation vector(s), shape (3,) or (N, 3)
    """
    return Rotation.from_matrix(np.asarray(R, dtype=np.float64)).as_rotvec()


def skew_symmetric(v: np.ndarray) -> np.ndarray:
    """
    Convert a vector to a skew-symmetric matrix.
    """
    return np.array([
        [0, -v[2], v[1]],
        [v[2], 0, -v[0]],
        [-v[1], v[0], 0]
    ])


def skew_symmetric_batch(v: np.ndarray) -> np.ndarray:
    """
    Skew-symmetric matrices for a stack of vectors, (N, 3) -> (N, 3, 3).
    """
    v = np.asarray(v)
    S = np.zeros(v.shape[:-1] + (3, 3), dtype=v.dtype)
    S[..., 0, 1] = -v[..., 2]
    S[..., 0, 2] = v[..., 1]
    S[..., 1, 0] = v[..., 2]
    S[..., 1, 2] = -v[..., 0]
    S[..., 2, 0] = -v[..., 1]
    S[..., 2, 1] = v[..., 0]
    return S


def so3_right_jacobian(phi):
    theta = np.linalg.norm(phi)
    I = np.eye(3)

    if theta < 1e-5:
        return I - 0.5 * skew_symmetric(phi) + (1.0 / 6.0) * skew_symmetric(phi) @ skew_symmetric(phi)
    else:
        K = skew_symmetric(phi)
        theta2 = theta**2
        theta3 = theta**3
        A = (1 - np.cos(theta)) / theta2
        B = (theta - np.sin(theta)) / theta3
        return I - A * K + B * K @ K


def so3_left_jacobian(phi):
    """
    Left Jacobian of SO(3): exp(phi + dphi) ~= exp(J_l(phi) dphi) exp(phi).
    """
    return so3_right_jacobian(-np.asarray(phi, dtype=np.float64))
