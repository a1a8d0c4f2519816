"""HTTP server and wire types for Kubernetes scheduler extenders."""