"""
nbody_pyramid.cpu_kernels
Numba host versions of the CUDA kernels in ``cuda_kernels``.

Same layouts and arithmetic as the device code, with two differences that
only affect speed: the world box is resolved once per launch instead of once
per thread, and aggregation is a serial (hence deterministic) loop instead of
atomics. ``fastmath`` is left off so NaN checks stay meaningful.
"""
import numpy as np

from ._backend import NUMBA_AVAILABLE

FIXED_SCALE = 16777216.0  # 2**24
EMPTY_VOXEL_MASS = 1e-10
BOUNDS_MARGIN = 0.1
MAC_EPSILON = 1e-6
TRAVERSAL_STACK = 64

if NUMBA_AVAILABLE:
    from numba import njit, prange

    # ------------------------------------------------------------------
    # shared helpers
    # ------------------------------------------------------------------

    @njit(cache=True, inline='always')
    def _particle_valid(x, y, z, m):
        return m > 0.0 and not (np.isnan(x) or np.isnan(y) or np.isnan(z) or np.isnan(m))

    @njit(cache=True)
    def resolve_world_box(bounds, hint, use_bounds):
        """Return ``(lo, ext, max_ext)`` of the box particles are binned in."""
        valid = use_bounds and bounds[0, 3] > 0.5 and bounds[1, 3] > 0.5
        lo = np.empty(3, dtype=np.float64)
        ext = np.empty(3, dtype=np.float64)
        max_ext = 0.0
        for a in range(3):
            if valid:
                mn = bounds[0, a] - BOUNDS_MARGIN
                mx = bounds[1, a] + BOUNDS_MARGIN
            else:
                mn = hint[0, a]
                mx = hint[1, a]
            lo[a] = mn
            ext[a] = max(mx - mn, 1e-12)
            max_ext = max(max_ext, ext[a])
        return lo, ext, max_ext

    @njit(cache=True, inline='always')
    def _voxel_coord(p, lo, ext, g):
        t = (p - lo) / ext
        t = min(max(t, 0.0), 0.9999)
        v = int(np.floor(t * g))
        return min(max(v, 0), g - 1)

    @njit(cache=True, inline='always')
    def _texel(g, spr, x, y, z):
        return (z // spr) * g + y, (z % spr) * g + x

    # ------------------------------------------------------------------
    # bounds
    # ------------------------------------------------------------------

    @njit(parallel=True, cache=True)
    def bounds_reduce_pass(src, src_h, src_w, first, dst, dst_h, dst_w):
        """One 8x8 min/max pass over flat buffers (see the CUDA version)."""
        src_plane = src_h * src_w * 4
        dst_plane = dst_h * dst_w * 4
        for idx in prange(dst_h * dst_w):
            oy = idx // dst_w
            ox = idx % dst_w
            mn0 = mn1 = mn2 = np.inf
            mx0 = mx1 = mx2 = -np.inf
            found = False
            for dy in range(8):
                y = oy * 8 + dy
                if y >= src_h:
                    break
                for dx in range(8):
                    x = ox * 8 + dx
                    if x >= src_w:
                        break
                    base = (y * src_w + x) * 4
                    if first:
                        if not _particle_valid(src[base], src[base + 1], src[base + 2], src[base + 3]):
                            continue
                        hi = base
                    else:
                        if not src[base + 3] > 0.5:
                            continue
                        hi = src_plane + base
                    mn0 = min(mn0, src[base])
                    mn1 = min(mn1, src[base + 1])
                    mn2 = min(mn2, src[base + 2])
                    mx0 = max(mx0, src[hi])
                    mx1 = max(mx1, src[hi + 1])
                    mx2 = max(mx2, src[hi + 2])
                    found = True

            out = idx * 4
            if found:
                dst[out] = mn0
                dst[out + 1] = mn1
                dst[out + 2] = mn2
                dst[out + 3] = 1.0
                dst[dst_plane + out] = mx0
                dst[dst_plane + out + 1] = mx1
                dst[dst_plane + out + 2] = mx2
                dst[dst_plane + out + 3] = 1.0
            else:
                for c in range(4):
                    dst[out + c] = 0.0
                    dst[dst_plane + out + c] = 0.0

    # ------------------------------------------------------------------
    # aggregation, occupancy, pyramid
    # ------------------------------------------------------------------

    @njit(cache=True)
    def aggregate_moments(pos, lo, ext, g, spr, a0, a1, a2):
        """Deposit every valid particle of ``pos`` (n, 4) into level 0."""
        for i in range(pos.shape[0]):
            x, y, z, m = pos[i, 0], pos[i, 1], pos[i, 2], pos[i, 3]
            if not _particle_valid(x, y, z, m):
                continue
            vx = _voxel_coord(x, lo[0], ext[0], g)
            vy = _voxel_coord(y, lo[1], ext[1], g)
            vz = _voxel_coord(z, lo[2], ext[2], g)
            r, c = _texel(g, spr, vx, vy, vz)
            a0[0, r, c, 0] += m * x
            a0[0, r, c, 1] += m * y
            a0[0, r, c, 2] += m * z
            a0[0, r, c, 3] += m
            a1[0, r, c, 0] += m * x * x
            a1[0, r, c, 1] += m * y * y
            a1[0, r, c, 2] += m * z * z
            a1[0, r, c, 3] += m * x * y
            a2[0, r, c, 0] += m * x * z
            a2[0, r, c, 1] += m * y * z

    @njit(cache=True, inline='always')
    def _fixed(v):
        return np.int64(np.floor(v * FIXED_SCALE + 0.5))

    @njit(cache=True)
    def aggregate_moments_fixed(pos, lo, ext, g, spr, acc):
        """Fixed-point deposit into ``acc`` (3, H0, W0, 4) int64."""
        for i in range(pos.shape[0]):
            x, y, z, m = pos[i, 0], pos[i, 1], pos[i, 2], pos[i, 3]
            if not _particle_valid(x, y, z, m):
                continue
            vx = _voxel_coord(x, lo[0], ext[0], g)
            vy = _voxel_coord(y, lo[1], ext[1], g)
            vz = _voxel_coord(z, lo[2], ext[2], g)
            r, c = _texel(g, spr, vx, vy, vz)
            acc[0, r, c, 0] += _fixed(m * x)
            acc[0, r, c, 1] += _fixed(m * y)
            acc[0, r, c, 2] += _fixed(m * z)
            acc[0, r, c, 3] += _fixed(m)
            acc[1, r, c, 0] += _fixed(m * x * x)
            acc[1, r, c, 1] += _fixed(m * y * y)
            acc[1, r, c, 2] += _fixed(m * z * z)
            acc[1, r, c, 3] += _fixed(m * x * y)
            acc[2, r, c, 0] += _fixed(m * x * z)
            acc[2, r, c, 1] += _fixed(m * y * z)

    @njit(parallel=True, cache=True)
    def level_occupancy(a0, occ, level, g, spr):
        for idx in prange(g * g * g):
            x = idx % g
            y = (idx // g) % g
            z = idx // (g * g)
            r, c = _texel(g, spr, x, y, z)
            occ[level, r, c] = 1.0 if a0[level, r, c, 3] > 0.0 else 0.0

    @njit(parallel=True, cache=True)
    def pyramid_build_level(in_a0, in_a1, in_a2, out_a0, out_a1, out_a2, out_occ,
                            child_level, cg, cspr, pg, pspr):
        """Sum the 8 children of every parent voxel, in a fixed order."""
        parent_level = child_level + 1
        for idx in prange(pg * pg * pg):
            x = idx % pg
            y = (idx // pg) % pg
            z = idx // (pg * pg)
            s0 = np.zeros(4, dtype=np.float64)
            s1 = np.zeros(4, dtype=np.float64)
            s2 = np.zeros(4, dtype=np.float64)
            for k in range(8):
                cr, cc = _texel(cg, cspr, 2 * x + (k & 1), 2 * y + ((k >> 1) & 1), 2 * z + ((k >> 2) & 1))
                for ch in range(4):
                    s0[ch] += in_a0[child_level, cr, cc, ch]
                    s1[ch] += in_a1[child_level, cr, cc, ch]
                    s2[ch] += in_a2[child_level, cr, cc, ch]
            r, c = _texel(pg, pspr, x, y, z)
            for ch in range(4):
                out_a0[parent_level, r, c, ch] = s0[ch]
                out_a1[parent_level, r, c, ch] = s1[ch]
                out_a2[parent_level, r, c, ch] = s2[ch]
            out_occ[parent_level, r, c] = 1.0 if s0[3] > 0.0 else 0.0

    # ------------------------------------------------------------------
    # traversal
    # ------------------------------------------------------------------

    @njit(parallel=True, cache=True)
    def traverse_quadrupole(pos, lo, ext, max_ext, a0, a1, a2, occ, grids, sprs,
                            theta, G, eps, use_occ, use_quad, force):
        """Barnes-Hut walk per particle, writing (fx, fy, fz, 0) to ``force``."""
        num_levels = grids.shape[0]
        top = num_levels - 1
        gt = grids[top]
        n_roots = gt * gt * gt
        eps2 = eps * eps
        g0 = grids[0]

        for i in prange(pos.shape[0]):
            px, py, pz, pm = pos[i, 0], pos[i, 1], pos[i, 2], pos[i, 3]
            force[i, 0] = 0.0
            force[i, 1] = 0.0
            force[i, 2] = 0.0
            force[i, 3] = 0.0
            if not _particle_valid(px, py, pz, pm):
                continue

            sx = _voxel_coord(px, lo[0], ext[0], g0)
            sy = _voxel_coord(py, lo[1], ext[1], g0)
            sz = _voxel_coord(pz, lo[2], ext[2], g0)

            st_level = np.empty(TRAVERSAL_STACK, dtype=np.int64)
            st_idx = np.empty(TRAVERSAL_STACK, dtype=np.int64)
            fx = 0.0
            fy = 0.0
            fz = 0.0

            for root in range(n_roots):
                sp = 0
                st_level[0] = top
                st_idx[0] = root
                sp = 1
                while sp > 0:
                    sp -= 1
                    lvl = st_level[sp]
                    idx = st_idx[sp]
                    g = grids[lvl]
                    x = idx % g
                    y = (idx // g) % g
                    z = idx // (g * g)
                    r, c = _texel(g, sprs[lvl], x, y, z)

                    if use_occ and occ[lvl, r, c] < 0.5:
                        continue
                    mass = a0[lvl, r, c, 3]
                    if not mass > EMPTY_VOXEL_MASS:
                        continue

                    is_self = x == (sx >> lvl) and y == (sy >> lvl) and z == (sz >> lvl)
                    cx = a0[lvl, r, c, 0] / mass
                    cy = a0[lvl, r, c, 1] / mass
                    cz = a0[lvl, r, c, 2] / mass
                    rx = px - cx
                    ry = py - cy
                    rz = pz - cz
                    dist2 = rx * rx + ry * ry + rz * rz

                    if lvl == 0:
                        accept = not is_self
                    else:
                        cell = max_ext / g
                        accept = (not is_self) and cell / (np.sqrt(dist2) + MAC_EPSILON) < theta

                    if accept:
                        inv = 1.0 / np.sqrt(dist2 + eps2)
                        inv2 = inv * inv
                        inv3 = inv2 * inv
                        gm = G * mass * inv3
                        fx -= gm * rx
                        fy -= gm * ry
                        fz -= gm * rz
                        if lvl > 0 and use_quad:
                            qxx = a1[lvl, r, c, 0] - cx * cx * mass
                            qyy = a1[lvl, r, c, 1] - cy * cy * mass
                            qzz = a1[lvl, r, c, 2] - cz * cz * mass
                            qxy = a1[lvl, r, c, 3] - cx * cy * mass
                            qxz = a2[lvl, r, c, 0] - cx * cz * mass
                            qyz = a2[lvl, r, c, 1] - cy * cz * mass
                            qrx = qxx * rx + qxy * ry + qxz * rz
                            qry = qxy * rx + qyy * ry + qyz * rz
                            qrz = qxz * rx + qyz * ry + qzz * rz
                            rqr = rx * qrx + ry * qry + rz * qrz
                            tr = qxx + qyy + qzz
                            inv5 = inv3 * inv2
                            inv7 = inv5 * inv2
                            radial = 1.5 * tr * inv5 - 7.5 * rqr * inv7
                            fx += G * (3.0 * qrx * inv5 + radial * rx)
                            fy += G * (3.0 * qry * inv5 + radial * ry)
                            fz += G * (3.0 * qrz * inv5 + radial * rz)
                    elif lvl > 0:
                        cg = grids[lvl - 1]
                        for k in range(8):
                            if sp >= TRAVERSAL_STACK:
                                break
                            ccx = 2 * x + (k & 1)
                            ccy = 2 * y + ((k >> 1) & 1)
                            ccz = 2 * z + ((k >> 2) & 1)
                            st_level[sp] = lvl - 1
                            st_idx[sp] = ccx + cg * (ccy + cg * ccz)
                            sp += 1

            force[i, 0] = fx
            force[i, 1] = fy
            force[i, 2] = fz

    # ------------------------------------------------------------------
    # integration
    # ------------------------------------------------------------------

    @njit(parallel=True, cache=True)
    def integrate_euler(pos, vel, force, dt, damping, max_speed, max_accel, out_pos, out_vel):
        """Semi-implicit Euler step over (n, 4) slot arrays; safe in place."""
        for i in prange(pos.shape[0]):
            px, py, pz, m = pos[i, 0], pos[i, 1], pos[i, 2], pos[i, 3]
            vx, vy, vz, vw = vel[i, 0], vel[i, 1], vel[i, 2], vel[i, 3]
            ax, ay, az = force[i, 0], force[i, 1], force[i, 2]

            if (not _particle_valid(px, py, pz, m)) or np.isnan(ax) or np.isnan(ay) or np.isnan(az):
                out_pos[i, 0] = px
                out_pos[i, 1] = py
                out_pos[i, 2] = pz
                out_pos[i, 3] = m
                out_vel[i, 0] = vx
                out_vel[i, 1] = vy
                out_vel[i, 2] = vz
                out_vel[i, 3] = vw
                continue

            amag = np.sqrt(ax * ax + ay * ay + az * az)
            if amag > max_accel:
                s = max_accel / amag
                ax *= s
                ay *= s
                az *= s

            keep = 1.0 - damping
            vx = (vx + ax * dt) * keep
            vy = (vy + ay * dt) * keep
            vz = (vz + az * dt) * keep

            speed = np.sqrt(vx * vx + vy * vy + vz * vz)
            if speed > max_speed:
                s = max_speed / speed
                vx *= s
                vy *= s
                vz *= s

            out_pos[i, 0] = px + vx * dt
            out_pos[i, 1] = py + vy * dt
            out_pos[i, 2] = pz + vz * dt
            out_pos[i, 3] = m
            out_vel[i, 0] = vx
            out_vel[i, 1] = vy
            out_vel[i, 2] = vz
            out_vel[i, 3] = vw
