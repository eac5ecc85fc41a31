from wavmedia.runtime.media_runtime import MediaRuntime

__all__ = ["MediaRuntime"]
