class SegEngineError(Exception):
    """Base class for every error raised by segengine."""


class ConfigError(SegEngineError):
    pass


class EngineLoadError(SegEngineError):
    pass


class MissingArtifactError(EngineLoadError):
    """Neither a cached engine nor the ONNX network description is available."""


class CorruptArtifactError(EngineLoadError):
    """The cached engine could not be deserialized."""


class CompilationError(EngineLoadError):
    pass


class AllocationError(SegEngineError):
    pass


class ShapeError(SegEngineError):
    pass


class InferenceError(SegEngineError):
    pass


class InferenceTimeoutError(InferenceError):
    pass
