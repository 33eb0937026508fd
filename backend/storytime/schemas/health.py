from pydantic import BaseModel


class HealthRead(BaseModel):
    status: str
    app: str
    environment: str
    jobs: list[str]
