from wavmedia.converters.format_converter import FormatConverter, ModuleRender, RenderedStem
from wavmedia.converters.process import PipeStage, ToolInvoker, ToolResult

__all__ = ["FormatConverter", "ModuleRender", "RenderedStem", "PipeStage", "ToolInvoker", "ToolResult"]
