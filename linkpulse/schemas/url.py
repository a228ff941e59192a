from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    HttpUrl,
    TypeAdapter,
    ValidationError,
    field_validator,
)

_http_url = TypeAdapter(HttpUrl)


class ShortenRequest(BaseModel):
    url: str = Field(..., description="The original URL to be shortened")

    @field_validator("url")
    @classmethod
    def must_be_http_url(cls, value: str) -> str:
        """Validate as an http(s) URL but keep the caller's exact spelling.

        HttpUrl normalizes (e.g. appends a trailing slash), and the redirect
        must send back exactly what was submitted.
        """
        value = value.strip()
        try:
            _http_url.validate_python(value)
        except ValidationError as e:
            raise ValueError(f"not a valid http(s) URL: {value!r}") from e
        return value


class ShortenResponse(BaseModel):
    short_url: str


class URLRecord(BaseModel):
    id: int
    short_code: str
    long_url: str

    # Pydantic V2 style configuration
    model_config = ConfigDict(from_attributes=True)


class AnalyticsRow(BaseModel):
    short_code: str
    long_url: str
    click_count: int

    model_config = ConfigDict(from_attributes=True)
