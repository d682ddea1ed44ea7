import jsonschema

from assistcore.tools.base import Tool, normalize_schema


class ToolValidator:
    @staticmethod
    def validate(tool: Tool, arguments: dict) -> tuple[bool, str | None]:
        """Check *arguments* against the tool's JSON schema."""
        try:
            jsonschema.validate(
                instance=arguments,
                schema=normalize_schema(tool.parameters),
            )
            return True, None
        except jsonschema.ValidationError as e:
            where = "/".join(str(p) for p in e.absolute_path)
            return False, f"{where}: {e.message}" if where else str(e.message)
        except jsonschema.SchemaError as e:
            return False, f"invalid tool schema: {e.message}"
