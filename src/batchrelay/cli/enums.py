from enum import StrEnum


class Provider(StrEnum):
    anthropic = "anthropic"
    openai = "openai"
