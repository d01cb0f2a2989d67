from pydantic import BaseModel


class Skill(BaseModel):
    name: str
    description: str
    instructions: str


class SkillRegistry:
    """Skills discovered for a run. Loading them from storage happens elsewhere."""

    def __init__(self, skills: list[Skill] | None = None):
        self._skills: dict[str, Skill] = {s.name: s for s in skills or []}

    def __len__(self) -> int:
        return len(self._skills)

    def list(self) -> list[Skill]:
        return list(self._skills.values())

    def get(self, name: str) -> Skill | None:
        return self._skills.get(name)
