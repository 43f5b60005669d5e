"""JIT-compiled kernels for performance-critical operations.

These kernels back the flat (arena) KD-tree: an in-place quickselect build,
a branch-and-bound nearest-neighbour search for a single query point, and
batch drivers that resolve many query points independently. The query
kernels only read the tree buffers and write their own output slots, so they
are safe to run from several threads at once (they release the GIL).
"""

from __future__ import annotations

import numba
import numpy as np

# Upper bound on tree depth for any array addressable by int64 indices.
_MAX_BUILD_STACK = 130


@numba.njit(nogil=True, cache=True)
def _select_on_axis(order, points, start, end, kth, axis):
    """Reorder order[start:end] so order[kth] holds the kth smallest value on axis.

    Entries before kth are <= it on axis and entries after are >= it.
    """
    lo = start
    hi = end - 1
    while lo < hi:
        pivot = points[order[(lo + hi) // 2], axis]
        i = lo
        j = hi
        while i <= j:
            while points[order[i], axis] < pivot:
                i += 1
            while points[order[j], axis] > pivot:
                j -= 1
            if i <= j:
                tmp = order[i]
                order[i] = order[j]
                order[j] = tmp
                i += 1
                j -= 1
        if kth <= j:
            hi = j
        elif kth >= i:
            lo = i
        else:
            break


@numba.njit(nogil=True, cache=True)
def build_flat_tree_jit(points: np.ndarray):
    """Build the node buffers of a flat KD-tree (JIT-compiled).

    Nodes are emitted depth-first, lesser side first, and numbered in
    emission order, so node 0 is the root.

    Args:
        points: (N, 3) array of XYZ coordinates, N >= 1.

    Returns:
        Tuple (node_point, node_axis, node_lesser, node_greater, depth) where
        node_point maps node ids to row indices of ``points``, child arrays
        hold node ids or -1, and depth is the number of levels.
    """
    n = points.shape[0]
    order = np.arange(n)
    node_point = np.empty(n, dtype=np.int64)
    node_axis = np.empty(n, dtype=np.int64)
    node_lesser = np.full(n, -1, dtype=np.int64)
    node_greater = np.full(n, -1, dtype=np.int64)

    # start, end, depth, parent, side (0 = lesser, 1 = greater)
    stack = np.empty((_MAX_BUILD_STACK, 5), dtype=np.int64)
    stack[0, 0] = 0
    stack[0, 1] = n
    stack[0, 2] = 0
    stack[0, 3] = -1
    stack[0, 4] = 0
    top = 1
    emitted = 0
    max_depth = 0

    while top > 0:
        top -= 1
        start = stack[top, 0]
        end = stack[top, 1]
        depth = stack[top, 2]
        parent = stack[top, 3]
        side = stack[top, 4]

        axis = depth % 3
        mid = start + (end - start) // 2
        _select_on_axis(order, points, start, end, mid, axis)

        node = emitted
        emitted += 1
        node_point[node] = order[mid]
        node_axis[node] = axis
        if parent >= 0:
            if side == 0:
                node_lesser[parent] = node
            else:
                node_greater[parent] = node
        if depth > max_depth:
            max_depth = depth

        if mid + 1 < end:
            stack[top, 0] = mid + 1
            stack[top, 1] = end
            stack[top, 2] = depth + 1
            stack[top, 3] = node
            stack[top, 4] = 1
            top += 1
        if start < mid:
            stack[top, 0] = start
            stack[top, 1] = mid
            stack[top, 2] = depth + 1
            stack[top, 3] = node
            stack[top, 4] = 0
            top += 1

    return node_point, node_axis, node_lesser, node_greater, max_depth + 1


@numba.njit(nogil=True, cache=True)
def nearest_node_jit(points, node_point, node_axis, node_lesser, node_greater,
                     qx, qy, qz, stack_nodes, stack_bounds):
    """Branch-and-bound search for the node closest to (qx, qy, qz).

    ``stack_nodes``/``stack_bounds`` are caller-provided scratch of length
    >= tree depth + 1. A subtree is entered only when the squared distance
    from the query to its splitting plane is below the best found so far.

    Returns:
        Tuple (node_id, squared_distance, visited_nodes).
    """
    best = -1
    best_d2 = np.inf
    visited = 0

    stack_nodes[0] = 0
    stack_bounds[0] = 0.0
    top = 1
    while top > 0:
        top -= 1
        node = stack_nodes[top]
        if stack_bounds[top] >= best_d2:
            continue
        visited += 1

        p = node_point[node]
        dx = qx - points[p, 0]
        dy = qy - points[p, 1]
        dz = qz - points[p, 2]
        d2 = dx * dx + dy * dy + dz * dz
        if d2 < best_d2:
            best_d2 = d2
            best = node

        axis = node_axis[node]
        if axis == 0:
            diff = dx
        elif axis == 1:
            diff = dy
        else:
            diff = dz

        if diff > 0:
            near = node_greater[node]
            far = node_lesser[node]
        else:
            near = node_lesser[node]
            far = node_greater[node]

        # far is pushed first so the near side is explored first
        if far != -1:
            stack_nodes[top] = far
            stack_bounds[top] = diff * diff
            top += 1
        if near != -1:
            stack_nodes[top] = near
            stack_bounds[top] = 0.0
            top += 1

    return best, best_d2, visited


@numba.njit(nogil=True, cache=True)
def _transform_query(queries, i, matrix):
    x = queries[i, 0]
    y = queries[i, 1]
    z = queries[i, 2]
    tx = matrix[0, 0] * x + matrix[0, 1] * y + matrix[0, 2] * z + matrix[0, 3]
    ty = matrix[1, 0] * x + matrix[1, 1] * y + matrix[1, 2] * z + matrix[1, 3]
    tz = matrix[2, 0] * x + matrix[2, 1] * y + matrix[2, 2] * z + matrix[2, 3]
    return tx, ty, tz


@numba.njit(nogil=True, cache=True)
def query_range_jit(points, node_point, node_axis, node_lesser, node_greater, depth,
                    queries, matrix, start, end, out_nodes, out_d2, out_visited):
    """Resolve queries[start:end] one after another (JIT-compiled).

    Each query is first mapped through the 4x4 ``matrix``. Results are written
    to the same rows of the output arrays; nothing else is written.
    """
    stack_nodes = np.empty(depth + 1, dtype=np.int64)
    stack_bounds = np.empty(depth + 1, dtype=np.float64)
    for i in range(start, end):
        qx, qy, qz = _transform_query(queries, i, matrix)
        node, d2, visited = nearest_node_jit(
            points, node_point, node_axis, node_lesser, node_greater,
            qx, qy, qz, stack_nodes, stack_bounds,
        )
        out_nodes[i] = node
        out_d2[i] = d2
        out_visited[i] = visited


@numba.njit(parallel=True, nogil=True, cache=True)
def query_batch_parallel_jit(points, node_point, node_axis, node_lesser, node_greater, depth,
                             queries, matrix, out_nodes, out_d2, out_visited):
    """Resolve every query independently across numba worker threads."""
    n = queries.shape[0]
    for i in numba.prange(n):
        stack_nodes = np.empty(depth + 1, dtype=np.int64)
        stack_bounds = np.empty(depth + 1, dtype=np.float64)
        qx, qy, qz = _transform_query(queries, i, matrix)
        node, d2, visited = nearest_node_jit(
            points, node_point, node_axis, node_lesser, node_greater,
            qx, qy, qz, stack_nodes, stack_bounds,
        )
        out_nodes[i] = node
        out_d2[i] = d2
        out_visited[i] = visited


@numba.njit(parallel=True, cache=True)
def apply_transform_jit(points: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    """Apply a 4x4 rigid/affine matrix to points (JIT-compiled).

    Args:
        points: (N, 3) array of XYZ coordinates.
        matrix: (4, 4) transformation matrix.

    Returns:
        Transformed points (N, 3).
    """
    n = points.shape[0]
    result = np.empty_like(points)
    for i in numba.prange(n):
        x, y, z = _transform_query(points, i, matrix)
        result[i, 0] = x
        result[i, 1] = y
        result[i, 2] = z
    return result
