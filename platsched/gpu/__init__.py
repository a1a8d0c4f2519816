"""GPU-aware scheduling: resource accounting, node cache, extender logic and command line."""