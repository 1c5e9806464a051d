from pydantic import BaseModel, Field, ValidationError


class SettingsSchema(BaseModel):
    db_path: str = "planner.db"
    weight_unit: str = "kg"
    rest_default_seconds: int = Field(90, ge=0)
    assistant_base_url: str = "https://api.openai.com/v1"
    assistant_model: str = "gpt-4o-mini"
    assistant_api_key: str | None = None
    assistant_timeout: float = Field(30.0, gt=0)
    resolver_threshold: float = Field(0.74, ge=0, le=1)
    resolver_tie_margin: float = Field(0.08, ge=0, le=1)
    resolver_max_suggestions: int = Field(3, ge=1, le=5)
    draft_resolver_threshold: float = Field(0.58, ge=0, le=1)
    draft_resolver_tie_margin: float = Field(0.06, ge=0, le=1)


def validate_settings(data: dict) -> SettingsSchema:
    try:
        return SettingsSchema(**data)
    except ValidationError as e:
        raise ValueError(str(e))
