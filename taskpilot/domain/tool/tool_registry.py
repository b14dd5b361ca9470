from typing import Dict, List, Any, Optional


TASK_TOOLS: List[Dict[str, Any]] = [
    {
        "id": "create_task",
        "name": "Create Task",
        "description": (
            "Create a new task for the user. Safe to repeat: if an identical task "
            "(same title and due date) already exists it is returned instead."
        ),
        "category": "write",
        "mutating": True,
        "parameters": {
            "title": {"type": "string", "required": True, "description": "Short task title"},
            "due_date": {"type": "string", "description": "YYYY-MM-DD, a weekday name, today or tomorrow"},
            "status": {"type": "string", "enum": ["open", "in_progress", "done"]},
            "description": {"type": "string", "description": "Optional details"},
        },
    },
    {
        "id": "get_tasks",
        "name": "Get Tasks",
        "description": "List the user's tasks, optionally filtered by status and due date range.",
        "category": "read",
        "mutating": False,
        "parameters": {
            "status": {"type": "string", "enum": ["open", "in_progress", "done"]},
            "due_before": {"type": "string", "description": "Only tasks due on or before this date"},
            "due_after": {"type": "string", "description": "Only tasks due on or after this date"},
        },
    },
    {
        "id": "get_task_by_id",
        "name": "Get Task By Id",
        "description": "Fetch a single task by its identifier.",
        "category": "read",
        "mutating": False,
        "parameters": {
            "task_id": {"type": "string", "required": True},
        },
    },
    {
        "id": "update_task",
        "name": "Update Task",
        "description": "Change the title, due date, status or description of an existing task.",
        "category": "write",
        "mutating": True,
        "parameters": {
            "task_id": {"type": "string", "required": True},
            "title": {"type": "string"},
            "due_date": {"type": "string"},
            "status": {"type": "string", "enum": ["open", "in_progress", "done"]},
            "description": {"type": "string"},
        },
    },
    {
        "id": "delete_task",
        "name": "Delete Task",
        "description": "Permanently delete a task by its identifier.",
        "category": "write",
        "mutating": True,
        "parameters": {
            "task_id": {"type": "string", "required": True},
        },
    },
]


class ToolRegistry:
    """Registry of the task tools exposed to the reasoning model"""

    def __init__(self, tools: Optional[List[Dict[str, Any]]] = None):
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.tool_categories: Dict[str, List[str]] = {}

        for tool in tools if tools is not None else TASK_TOOLS:
            self.register_tool(tool)

    def register_tool(self, tool_config: Dict[str, Any]):
        """Register a new tool"""

        tool_id = tool_config["id"]
        category = tool_config.get("category", "general")

        self.tools[tool_id] = tool_config

        if category not in self.tool_categories:
            self.tool_categories[category] = []
        self.tool_categories[category].append(tool_id)

    def get_available_tools(self) -> List[Dict[str, Any]]:
        """Get all available tools"""

        return list(self.tools.values())

    def get_tool_info(self, tool_id: str) -> Optional[Dict[str, Any]]:
        """Get information about a specific tool"""

        return self.tools.get(tool_id)

    def get_tools_by_category(self, category: str) -> List[Dict[str, Any]]:
        """Get tools by category"""

        tool_ids = self.tool_categories.get(category, [])
        return [self.tools[tool_id] for tool_id in tool_ids if tool_id in self.tools]

    def is_mutating(self, tool_id: str) -> bool:
        tool = self.tools.get(tool_id)
        return bool(tool and tool.get("mutating"))

    def mutating_tool_ids(self) -> List[str]:
        return [tool_id for tool_id, tool in self.tools.items() if tool.get("mutating")]

    def to_function_specs(self) -> List[Dict[str, Any]]:
        """OpenAI-style function specs, accepted by BaseChatModel.bind_tools"""

        specs = []
        for tool_id, tool in self.tools.items():
            properties = {}
            required = []
            for name, param in tool.get("parameters", {}).items():
                properties[name] = {k: v for k, v in param.items() if k != "required"}
                if param.get("required"):
                    required.append(name)

            specs.append({
                "type": "function",
                "function": {
                    "name": tool_id,
                    "description": tool.get("description", ""),
                    "parameters": {
                        "type": "object",
                        "properties": properties,
                        "required": required,
                    },
                },
            })
        return specs
