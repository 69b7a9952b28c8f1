from tds.detector.models.model_spec import ModelSpec, build_model_spec, load_model_spec

__all__ = ["ModelSpec", "build_model_spec", "load_model_spec"]
