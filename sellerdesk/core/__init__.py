"""Core Layer: the API client façade and the resource SDK built on it."""
