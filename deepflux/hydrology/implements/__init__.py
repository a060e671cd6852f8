from .exphydro import build_exphydro, build_snow_bucket, build_soil_bucket

__all__ = ["build_exphydro", "build_snow_bucket", "build_soil_bucket"]
