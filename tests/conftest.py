import os

# The TBB threading layer (picked by numba when a system libtbb is present)
# is not fork-safe: after the process-pool executor test forks, the
# interpreter hangs at exit. Default to the OpenMP layer for the test run.
os.environ.setdefault("NUMBA_THREADING_LAYER", "omp")
