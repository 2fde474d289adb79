from typing import Any, Optional, Protocol, runtime_checkable


@runtime_checkable
class InvokableTool(Protocol):
  name: str

  async def spec(self) -> dict: ...

  async def invoke(self, json_argument: Optional[str]) -> Any: ...
