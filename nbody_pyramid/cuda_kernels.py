"""
nbody_pyramid.cuda_kernels
CUDA kernels for the moment-pyramid gravity solver.

Every source below is a template: ``{T}`` and the math intrinsics are filled
in per precision by ``_backend.get_kernel`` and each kernel is compiled with
``COMMON_DEVICE_TEMPLATE`` prepended. Literal braces are doubled.

Layouts shared with the host code:
  particle texture   (H, W, 4)          slot i = (x, y, z, mass)
  bounds             (2, 4)             row 0 = (min, valid), row 1 = (max, valid)
  moment arrays      (L, H0, W0, 4)     one layer per level
  occupancy          (L, H0, W0)
Voxel (x, y, z) of a level with grid g and spr slices per row sits at texel
row (z / spr) * g + y, column (z % spr) * g + x of that level's layer.
"""

# ============================================================================
# SHARED DEVICE HELPERS
# ============================================================================

COMMON_DEVICE_TEMPLATE = r'''
#define MAX_LEVELS 8
#define TRAVERSAL_STACK (8 * MAX_LEVELS)
#define EMPTY_VOXEL_MASS 1e-10
#define BOUNDS_MARGIN 0.1
#define MAC_EPSILON 1e-6
#define FIXED_SCALE 16777216.0

__device__ __forceinline__
bool particle_valid(const {T}* p) {{
    return p[3] > ({T})0 && !isnan(p[0]) && !isnan(p[1]) && !isnan(p[2]) && !isnan(p[3]);
}}

// Reduced bounds (widened by the margin) when both flags are set, otherwise
// the world-bounds hint as given.
__device__ __forceinline__
void resolve_world_box(const {T}* bounds, const {T}* hint, int use_bounds,
                       {T}* lo, {T}* ext, {T}* max_ext) {{
    bool valid = use_bounds && bounds[3] > ({T})0.5 && bounds[7] > ({T})0.5;
    *max_ext = ({T})0;
    for (int a = 0; a < 3; ++a) {{
        {T} mn, mx;
        if (valid) {{
            mn = bounds[a] - ({T})BOUNDS_MARGIN;
            mx = bounds[4 + a] + ({T})BOUNDS_MARGIN;
        }} else {{
            mn = hint[a];
            mx = hint[4 + a];
        }}
        lo[a] = mn;
        ext[a] = {FMAX}(mx - mn, ({T})1e-12);
        *max_ext = {FMAX}(*max_ext, ext[a]);
    }}
}}

__device__ __forceinline__
int voxel_coord({T} p, {T} lo, {T} ext, int g) {{
    {T} t = (p - lo) / ext;
    t = {FMIN}({FMAX}(t, ({T})0), ({T})0.9999);
    int v = (int){FLOOR}(t * ({T})g);
    return min(max(v, 0), g - 1);
}}

__device__ __forceinline__
long long texel_offset(int level, int g, int spr, int x, int y, int z,
                       int W0, long long layer_texels) {{
    long long row = (long long)(z / spr) * g + y;
    long long col = (long long)(z % spr) * g + x;
    return level * layer_texels + row * W0 + col;
}}
'''

# ============================================================================
# BOUNDS REDUCTION
# ============================================================================

# One pass of the 8x8 min/max reduction. ``dst`` holds two planes of
# dst_h * dst_w texels (min, then max). The first pass reads the particle
# texture; later passes read the previous pass's planes. The final pass
# writes straight into the (2, 4) bounds array, which is the 1x1 case.
_BOUNDS_REDUCE_PASS = r'''
extern "C" __global__
void bounds_reduce_pass(
    const {T}* __restrict__ src,
    int src_h,
    int src_w,
    int first,
    {T}* __restrict__ dst,
    int dst_h,
    int dst_w
) {{
    int idx = blockIdx.x * blockDim.x + threadIdx.x;
    if (idx >= dst_h * dst_w) return;

    int oy = idx / dst_w;
    int ox = idx % dst_w;
    long long src_plane = (long long)src_h * src_w * 4;

    {T} mn0 = {BIG}, mn1 = {BIG}, mn2 = {BIG};
    {T} mx0 = -{BIG}, mx1 = -{BIG}, mx2 = -{BIG};
    bool found = false;

    for (int dy = 0; dy < 8; ++dy) {{
        int y = oy * 8 + dy;
        if (y >= src_h) break;
        for (int dx = 0; dx < 8; ++dx) {{
            int x = ox * 8 + dx;
            if (x >= src_w) break;
            long long base = ((long long)y * src_w + x) * 4;
            const {T}* lo;
            const {T}* hi;
            if (first) {{
                if (!particle_valid(src + base)) continue;
                lo = src + base;
                hi = src + base;
            }} else {{
                if (!(src[base + 3] > ({T})0.5)) continue;
                lo = src + base;
                hi = src + src_plane + base;
            }}
            mn0 = {FMIN}(mn0, lo[0]); mn1 = {FMIN}(mn1, lo[1]); mn2 = {FMIN}(mn2, lo[2]);
            mx0 = {FMAX}(mx0, hi[0]); mx1 = {FMAX}(mx1, hi[1]); mx2 = {FMAX}(mx2, hi[2]);
            found = true;
        }}
    }}

    long long out = (long long)idx * 4;
    long long dst_plane = (long long)dst_h * dst_w * 4;
    if (found) {{
        dst[out + 0] = mn0; dst[out + 1] = mn1; dst[out + 2] = mn2; dst[out + 3] = ({T})1;
        dst[dst_plane + out + 0] = mx0;
        dst[dst_plane + out + 1] = mx1;
        dst[dst_plane + out + 2] = mx2;
        dst[dst_plane + out + 3] = ({T})1;
    }} else {{
        for (int c = 0; c < 4; ++c) {{
            dst[out + c] = ({T})0;
            dst[dst_plane + out + c] = ({T})0;
        }}
    }}
}}
'''

# ============================================================================
# LEVEL-0 AGGREGATION
# ============================================================================

_AGGREGATE_MOMENTS = r'''
extern "C" __global__
void aggregate_moments(
    const {T}* __restrict__ pos,
    int n_slots,
    const {T}* __restrict__ bounds,
    const {T}* __restrict__ hint,
    int use_bounds,
    int g,
    int spr,
    int W0,
    {T}* a0,
    {T}* a1,
    {T}* a2
) {{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n_slots) return;
    const {T}* p = pos + (long long)i * 4;
    if (!particle_valid(p)) return;

    {T} lo[3], ext[3], max_ext;
    resolve_world_box(bounds, hint, use_bounds, lo, ext, &max_ext);
    int vx = voxel_coord(p[0], lo[0], ext[0], g);
    int vy = voxel_coord(p[1], lo[1], ext[1], g);
    int vz = voxel_coord(p[2], lo[2], ext[2], g);
    long long o = texel_offset(0, g, spr, vx, vy, vz, W0, 0) * 4;

    {T} x = p[0], y = p[1], z = p[2], m = p[3];
    atomicAdd(&a0[o + 0], m * x);
    atomicAdd(&a0[o + 1], m * y);
    atomicAdd(&a0[o + 2], m * z);
    atomicAdd(&a0[o + 3], m);
    atomicAdd(&a1[o + 0], m * x * x);
    atomicAdd(&a1[o + 1], m * y * y);
    atomicAdd(&a1[o + 2], m * z * z);
    atomicAdd(&a1[o + 3], m * x * y);
    atomicAdd(&a2[o + 0], m * x * z);
    atomicAdd(&a2[o + 1], m * y * z);
}}
'''

# Fixed-point fallback: 64-bit integer atomics on values scaled by 2^24.
# ``acc`` holds three planes of n_values integers (A0, A1, A2 of level 0).
_AGGREGATE_MOMENTS_FIXED = r'''
__device__ __forceinline__
void add_fixed(long long* acc, long long o, {T} v) {{
    long long q = llrint((double)v * FIXED_SCALE);
    atomicAdd((unsigned long long*)&acc[o], (unsigned long long)q);
}}

extern "C" __global__
void aggregate_moments_fixed(
    const {T}* __restrict__ pos,
    int n_slots,
    const {T}* __restrict__ bounds,
    const {T}* __restrict__ hint,
    int use_bounds,
    int g,
    int spr,
    int W0,
    long long* acc,
    long long n_values
) {{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n_slots) return;
    const {T}* p = pos + (long long)i * 4;
    if (!particle_valid(p)) return;

    {T} lo[3], ext[3], max_ext;
    resolve_world_box(bounds, hint, use_bounds, lo, ext, &max_ext);
    int vx = voxel_coord(p[0], lo[0], ext[0], g);
    int vy = voxel_coord(p[1], lo[1], ext[1], g);
    int vz = voxel_coord(p[2], lo[2], ext[2], g);
    long long o = texel_offset(0, g, spr, vx, vy, vz, W0, 0) * 4;

    {T} x = p[0], y = p[1], z = p[2], m = p[3];
    add_fixed(acc, o + 0, m * x);
    add_fixed(acc, o + 1, m * y);
    add_fixed(acc, o + 2, m * z);
    add_fixed(acc, o + 3, m);
    add_fixed(acc, n_values + o + 0, m * x * x);
    add_fixed(acc, n_values + o + 1, m * y * y);
    add_fixed(acc, n_values + o + 2, m * z * z);
    add_fixed(acc, n_values + o + 3, m * x * y);
    add_fixed(acc, 2 * n_values + o + 0, m * x * z);
    add_fixed(acc, 2 * n_values + o + 1, m * y * z);
}}
'''

_FIXED_TO_MOMENTS = r'''
extern "C" __global__
void fixed_to_moments(
    const long long* __restrict__ acc,
    long long n_values,
    {T}* __restrict__ a0,
    {T}* __restrict__ a1,
    {T}* __restrict__ a2
) {{
    long long idx = (long long)blockIdx.x * blockDim.x + threadIdx.x;
    if (idx >= n_values) return;
    a0[idx] = ({T})((double)acc[idx] / FIXED_SCALE);
    a1[idx] = ({T})((double)acc[n_values + idx] / FIXED_SCALE);
    a2[idx] = ({T})((double)acc[2 * n_values + idx] / FIXED_SCALE);
}}
'''

# ============================================================================
# OCCUPANCY AND PYRAMID
# ============================================================================

_LEVEL_OCCUPANCY = r'''
extern "C" __global__
void level_occupancy(
    const {T}* __restrict__ a0,
    {T}* __restrict__ occ,
    int level,
    int g,
    int spr,
    int W0,
    long long layer_texels
) {{
    long long idx = (long long)blockIdx.x * blockDim.x + threadIdx.x;
    if (idx >= (long long)g * g * g) return;
    int x = (int)(idx % g);
    int y = (int)((idx / g) % g);
    int z = (int)(idx / ((long long)g * g));
    long long t = texel_offset(level, g, spr, x, y, z, W0, layer_texels);
    occ[t] = a0[t * 4 + 3] > ({T})0 ? ({T})1 : ({T})0;
}}
'''

# One thread per parent voxel; children are summed in a fixed order so
# repeated builds are bit-identical.
_PYRAMID_BUILD_LEVEL = r'''
extern "C" __global__
void pyramid_build_level(
    const {T}* in_a0,
    const {T}* in_a1,
    const {T}* in_a2,
    {T}* out_a0,
    {T}* out_a1,
    {T}* out_a2,
    {T}* out_occ,
    int child_level,
    int cg,
    int cspr,
    int pg,
    int pspr,
    int W0,
    long long layer_texels
) {{
    long long idx = (long long)blockIdx.x * blockDim.x + threadIdx.x;
    if (idx >= (long long)pg * pg * pg) return;
    int x = (int)(idx % pg);
    int y = (int)((idx / pg) % pg);
    int z = (int)(idx / ((long long)pg * pg));

    {T} s0[4] = {{0, 0, 0, 0}};
    {T} s1[4] = {{0, 0, 0, 0}};
    {T} s2[4] = {{0, 0, 0, 0}};
    for (int k = 0; k < 8; ++k) {{
        int cx = 2 * x + (k & 1);
        int cy = 2 * y + ((k >> 1) & 1);
        int cz = 2 * z + ((k >> 2) & 1);
        long long c = texel_offset(child_level, cg, cspr, cx, cy, cz, W0, layer_texels) * 4;
        for (int ch = 0; ch < 4; ++ch) {{
            s0[ch] += in_a0[c + ch];
            s1[ch] += in_a1[c + ch];
            s2[ch] += in_a2[c + ch];
        }}
    }}

    long long t = texel_offset(child_level + 1, pg, pspr, x, y, z, W0, layer_texels);
    for (int ch = 0; ch < 4; ++ch) {{
        out_a0[t * 4 + ch] = s0[ch];
        out_a1[t * 4 + ch] = s1[ch];
        out_a2[t * 4 + ch] = s2[ch];
    }}
    out_occ[t] = s0[3] > ({T})0 ? ({T})1 : ({T})0;
}}
'''

# ============================================================================
# TRAVERSAL
# ============================================================================

# Depth-first Barnes-Hut walk from every voxel of the coarsest level. A voxel
# is accepted when it is not the particle's own voxel and passes the
# opening-angle test (level 0: whenever it is not the own voxel); otherwise it
# is refined into its 8 children. Output is the acceleration (fx, fy, fz, 0).
_TRAVERSE_QUADRUPOLE = r'''
extern "C" __global__
void traverse_quadrupole(
    const {T}* __restrict__ pos,
    int n_slots,
    const {T}* __restrict__ bounds,
    const {T}* __restrict__ hint,
    int use_bounds,
    const {T}* __restrict__ a0,
    const {T}* __restrict__ a1,
    const {T}* __restrict__ a2,
    const {T}* __restrict__ occ,
    const int* __restrict__ grids,
    const int* __restrict__ sprs,
    int num_levels,
    int W0,
    long long layer_texels,
    {T} theta,
    {T} G,
    {T} eps,
    int use_occ,
    int use_quad,
    {T}* __restrict__ force
) {{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n_slots) return;
    const {T}* p = pos + (long long)i * 4;
    {T}* f = force + (long long)i * 4;

    if (!particle_valid(p)) {{
        f[0] = ({T})0; f[1] = ({T})0; f[2] = ({T})0; f[3] = ({T})0;
        return;
    }}

    {T} px = p[0], py = p[1], pz = p[2];
    {T} lo[3], ext[3], max_ext;
    resolve_world_box(bounds, hint, use_bounds, lo, ext, &max_ext);
    int g0 = grids[0];
    int sx = voxel_coord(px, lo[0], ext[0], g0);
    int sy = voxel_coord(py, lo[1], ext[1], g0);
    int sz = voxel_coord(pz, lo[2], ext[2], g0);

    {T} eps2 = eps * eps;
    {T} fx = ({T})0, fy = ({T})0, fz = ({T})0;

    int st_level[TRAVERSAL_STACK];
    int st_idx[TRAVERSAL_STACK];

    int top = num_levels - 1;
    int gt = grids[top];
    int n_roots = gt * gt * gt;

    for (int root = 0; root < n_roots; ++root) {{
        int sp = 0;
        st_level[sp] = top;
        st_idx[sp] = root;
        ++sp;

        while (sp > 0) {{
            --sp;
            int lvl = st_level[sp];
            int idx = st_idx[sp];
            int g = grids[lvl];
            int spr = sprs[lvl];
            int x = idx % g;
            int y = (idx / g) % g;
            int z = idx / (g * g);
            long long t = texel_offset(lvl, g, spr, x, y, z, W0, layer_texels);

            if (use_occ && occ[t] < ({T})0.5) continue;
            const {T}* m0 = a0 + t * 4;
            {T} mass = m0[3];
            if (!(mass > ({T})EMPTY_VOXEL_MASS)) continue;

            bool is_self = (x == (sx >> lvl)) && (y == (sy >> lvl)) && (z == (sz >> lvl));

            {T} cx = m0[0] / mass, cy = m0[1] / mass, cz = m0[2] / mass;
            {T} rx = px - cx, ry = py - cy, rz = pz - cz;
            {T} dist2 = rx * rx + ry * ry + rz * rz;

            bool accept;
            if (lvl == 0) {{
                accept = !is_self;
            }} else {{
                {T} cell = max_ext / ({T})g;
                accept = !is_self && cell / ({SQRT}(dist2) + ({T})MAC_EPSILON) < theta;
            }}

            if (accept) {{
                {T} inv = {RSQRT}(dist2 + eps2);
                {T} inv2 = inv * inv;
                {T} inv3 = inv2 * inv;
                {T} gm = G * mass * inv3;
                fx -= gm * rx;
                fy -= gm * ry;
                fz -= gm * rz;

                if (lvl > 0 && use_quad) {{
                    const {T}* m1 = a1 + t * 4;
                    const {T}* m2 = a2 + t * 4;
                    {T} qxx = m1[0] - cx * cx * mass;
                    {T} qyy = m1[1] - cy * cy * mass;
                    {T} qzz = m1[2] - cz * cz * mass;
                    {T} qxy = m1[3] - cx * cy * mass;
                    {T} qxz = m2[0] - cx * cz * mass;
                    {T} qyz = m2[1] - cy * cz * mass;

                    {T} qrx = qxx * rx + qxy * ry + qxz * rz;
                    {T} qry = qxy * rx + qyy * ry + qyz * rz;
                    {T} qrz = qxz * rx + qyz * ry + qzz * rz;
                    {T} rqr = rx * qrx + ry * qry + rz * qrz;
                    {T} tr = qxx + qyy + qzz;

                    {T} inv5 = inv3 * inv2;
                    {T} inv7 = inv5 * inv2;
                    {T} radial = ({T})1.5 * tr * inv5 - ({T})7.5 * rqr * inv7;
                    fx += G * (({T})3 * qrx * inv5 + radial * rx);
                    fy += G * (({T})3 * qry * inv5 + radial * ry);
                    fz += G * (({T})3 * qrz * inv5 + radial * rz);
                }}
            }} else if (lvl > 0) {{
                int cg = grids[lvl - 1];
                for (int k = 0; k < 8 && sp < TRAVERSAL_STACK; ++k) {{
                    int ccx = 2 * x + (k & 1);
                    int ccy = 2 * y + ((k >> 1) & 1);
                    int ccz = 2 * z + ((k >> 2) & 1);
                    st_level[sp] = lvl - 1;
                    st_idx[sp] = ccx + cg * (ccy + cg * ccz);
                    ++sp;
                }}
            }}
        }}
    }}

    f[0] = fx; f[1] = fy; f[2] = fz; f[3] = ({T})0;
}}
'''

# ============================================================================
# INTEGRATION
# ============================================================================

# Semi-implicit Euler. Safe in place: each thread reads its slot before
# writing it.
_INTEGRATE_EULER = r'''
extern "C" __global__
void integrate_euler(
    const {T}* pos,
    const {T}* vel,
    const {T}* __restrict__ force,
    int n_slots,
    {T} dt,
    {T} damping,
    {T} max_speed,
    {T} max_accel,
    {T}* out_pos,
    {T}* out_vel
) {{
    int i = blockIdx.x * blockDim.x + threadIdx.x;
    if (i >= n_slots) return;
    long long b = (long long)i * 4;

    {T} px = pos[b], py = pos[b + 1], pz = pos[b + 2], m = pos[b + 3];
    {T} vx = vel[b], vy = vel[b + 1], vz = vel[b + 2], vw = vel[b + 3];
    {T} ax = force[b], ay = force[b + 1], az = force[b + 2];

    bool skip = !particle_valid(pos + b) || isnan(ax) || isnan(ay) || isnan(az);
    if (skip) {{
        out_pos[b] = px; out_pos[b + 1] = py; out_pos[b + 2] = pz; out_pos[b + 3] = m;
        out_vel[b] = vx; out_vel[b + 1] = vy; out_vel[b + 2] = vz; out_vel[b + 3] = vw;
        return;
    }}

    {T} amag = {SQRT}(ax * ax + ay * ay + az * az);
    if (amag > max_accel) {{
        {T} s = max_accel / amag;
        ax *= s; ay *= s; az *= s;
    }}

    {T} keep = ({T})1 - damping;
    vx = (vx + ax * dt) * keep;
    vy = (vy + ay * dt) * keep;
    vz = (vz + az * dt) * keep;

    {T} speed = {SQRT}(vx * vx + vy * vy + vz * vz);
    if (speed > max_speed) {{
        {T} s = max_speed / speed;
        vx *= s; vy *= s; vz *= s;
    }}

    out_pos[b] = px + vx * dt;
    out_pos[b + 1] = py + vy * dt;
    out_pos[b + 2] = pz + vz * dt;
    out_pos[b + 3] = m;
    out_vel[b] = vx; out_vel[b + 1] = vy; out_vel[b + 2] = vz; out_vel[b + 3] = vw;
}}
'''

KERNEL_SOURCES = {
    'bounds_reduce_pass': _BOUNDS_REDUCE_PASS,
    'aggregate_moments': _AGGREGATE_MOMENTS,
    'aggregate_moments_fixed': _AGGREGATE_MOMENTS_FIXED,
    'fixed_to_moments': _FIXED_TO_MOMENTS,
    'level_occupancy': _LEVEL_OCCUPANCY,
    'pyramid_build_level': _PYRAMID_BUILD_LEVEL,
    'traverse_quadrupole': _TRAVERSE_QUADRUPOLE,
    'integrate_euler': _INTEGRATE_EULER,
}
