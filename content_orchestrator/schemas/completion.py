"""Validated outputs of the content completion capability."""
from typing import List, Optional

from pydantic import BaseModel, Field


class CleanedContent(BaseModel):
    content: str
    title: Optional[str] = None
    summary: Optional[str] = None


class InsightDraft(BaseModel):
    title: str = Field(min_length=1, max_length=512)
    content: str = Field(min_length=1)
    category: Optional[str] = None
    urgency: int = Field(default=5, ge=1, le=10)
    relatability: int = Field(default=5, ge=1, le=10)
    specificity: int = Field(default=5, ge=1, le=10)
    authority: int = Field(default=5, ge=1, le=10)


class InsightDraftList(BaseModel):
    insights: List[InsightDraft]


class PostDraft(BaseModel):
    title: str = Field(min_length=1, max_length=512)
    content: str = Field(min_length=1)
    hashtags: List[str] = Field(default_factory=list)

    def body(self) -> str:
        """Content with hashtags appended (skipping ones already present)."""
        tags = [t if t.startswith("#") else f"#{t}" for t in self.hashtags if t.strip()]
        tags = [t for t in tags if t not in self.content]
        if not tags:
            return self.content
        return f"{self.content}\n\n{' '.join(tags)}"
