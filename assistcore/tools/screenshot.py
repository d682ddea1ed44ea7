from __future__ import annotations

from assistcore.collaborators import ScreenCapture
from assistcore.tools.base import Tool
from assistcore.types import ToolResult


class ScreenshotTool(Tool):
    """Captures the screen through the host's ``ScreenCapture`` collaborator."""

    def __init__(self, screen: ScreenCapture) -> None:
        self.screen = screen

    @property
    def name(self) -> str:
        return "take_screenshot"

    @property
    def description(self) -> str:
        return (
            "Captures a screenshot of the entire screen and returns its path and a "
            "base64 preview. Useful when the user asks to see something on the screen "
            "or to get context about the current screen."
        )

    @property
    def parameters(self) -> dict:
        return {"type": "object", "properties": {}, "required": []}

    async def execute(self, **kwargs) -> ToolResult:
        shot = await self.screen.capture()
        return ToolResult(
            success=True,
            content=f"Screenshot saved to {shot.path} ({len(shot.preview)} base64 bytes)",
            data={"path": shot.path, "preview": shot.preview},
        )
