from __future__ import annotations

from pydantic import BaseModel, Field

from tiny_agent.schemas.schema import CompletionSchema


class DayPlan(BaseModel):
    """Per-day itinerary details with activities and budget estimates."""

    day: int = Field(ge=0, description="1-based day counter within the itinerary")
    title: str | None = Field(default=None, description="Short summary or theme for the day")
    activities: list[str] = Field(
        description="Primary activities or attractions for the day in chronological order"
    )
    estimated_cost: float = Field(description="Estimated total spend for the day in the plan currency")
    notes: str | None = Field(
        default=None, description="Optional notes about reservations, timing, or alternatives"
    )


class BudgetBreakdown(BaseModel):
    """Optional budget category breakdown for the structured response."""

    lodging: float | None = Field(default=None, description="Total lodging cost across the trip")
    activities: float | None = Field(default=None, description="Total activity or excursion spend")
    meals: float | None = Field(default=None, description="Food and dining spend estimate")
    transport: float | None = Field(
        default=None, description="Transportation spend (local transit, trains, flights)"
    )
    other: float | None = Field(default=None, description="Miscellaneous or contingency budget")


class VacationPlan(CompletionSchema):
    """Structured vacation plan returned by the vacation planner agent."""

    destination: str = Field(description='Destination city and country (e.g., "Paris, France")')
    nights: int = Field(ge=0, description="Number of nights included in the trip")
    start_date: str | None = Field(default=None, description="Optional ISO-8601 start date for the trip")
    travelers: int | None = Field(
        default=None, ge=0, description="Number of travelers the plan is designed for"
    )
    total_budget: float = Field(
        description="Total estimated budget for the full trip in the selected currency"
    )
    budget_per_person: float | None = Field(
        default=None, description="Estimated cost per traveler when the total is split evenly"
    )
    currency: str | None = Field(
        default=None, description='Currency code used for all monetary fields (e.g., "USD")'
    )
    itinerary: list[DayPlan] = Field(description="Day-by-day itinerary with planned activities")
    accommodation: str | None = Field(
        default=None, description="Recommended lodging information (hotel, neighborhood, notes)"
    )
    transportation: str | None = Field(
        default=None, description="Summary of transportation logistics (flights, trains, passes)"
    )
    highlights: list[str] = Field(description="Key highlights or must-see experiences for the trip")
    budget_breakdown: BudgetBreakdown | None = Field(
        default=None, description="Optional breakdown of the total budget by category"
    )
    notes: str | None = Field(
        default=None, description="Additional planning notes, tips, or follow-up actions"
    )


SCHEMAS: dict[str, type[CompletionSchema]] = {"vacation": VacationPlan}
