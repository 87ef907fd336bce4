"""
Report configurations per (aggregation, entity type).

Each config pairs the row schema used to validate downloaded reports with the
column list sent when the report is requested. The column list is derived from
the schema's aliases so the two cannot drift apart.
"""

from dataclasses import dataclass
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator

from app.models import AggregationType, EntityType
from app.services.bucketing import normalize_hourly_value


class ReportRow(BaseModel):
    """Columns shared by every Sponsored Products report."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    budget_currency: Optional[str] = Field(None, alias="budgetCurrency.value")
    campaign_id: str = Field(alias="campaign.id")
    campaign_name: Optional[str] = Field(None, alias="campaign.name")
    ad_group_id: str = Field(alias="adGroup.id")
    ad_id: str = Field(alias="ad.id")
    impressions: int = Field(alias="metric.impressions")
    clicks: int = Field(alias="metric.clicks")
    purchases: int = Field(alias="metric.purchases")
    sales: float = Field(alias="metric.sales")
    total_cost: float = Field(alias="metric.totalCost")


class HourlyRow(ReportRow):
    hour_value: str = Field(alias="hour.value")

    @model_validator(mode="before")
    @classmethod
    def _combine_bare_hour(cls, data: Any) -> Any:
        # Some accounts return hour.value as a bare hour with the day in date.value
        if isinstance(data, dict) and "hour.value" in data:
            combined = normalize_hourly_value(data["hour.value"], data.get("date.value"))
            if combined != data["hour.value"]:
                data = {**data, "hour.value": combined}
        return data


class DailyRow(ReportRow):
    date_value: str = Field(alias="date.value")


class HourlyTargetRow(HourlyRow):
    ad_group_name: Optional[str] = Field(None, alias="adGroup.name")
    target_value: str = Field("", alias="target.value")
    target_match_type: str = Field("", alias="target.matchType")
    search_term: Optional[str] = Field(None, alias="searchTerm.value")
    matched_target: Optional[str] = Field(None, alias="matchedTarget.value")


class DailyTargetRow(DailyRow):
    ad_group_name: Optional[str] = Field(None, alias="adGroup.name")
    target_value: str = Field("", alias="target.value")
    target_match_type: str = Field("", alias="target.matchType")
    search_term: Optional[str] = Field(None, alias="searchTerm.value")


class HourlyProductRow(HourlyRow):
    advertised_product_id: Optional[str] = Field(None, alias="advertisedProduct.id")
    advertised_product_marketplace: Optional[str] = Field(None, alias="advertisedProduct.marketplace")


class DailyProductRow(DailyRow):
    advertised_product_id: Optional[str] = Field(None, alias="advertisedProduct.id")
    advertised_product_marketplace: Optional[str] = Field(None, alias="advertisedProduct.marketplace")


def _fields_for(row_model: type[BaseModel]) -> list[str]:
    return [f.alias for f in row_model.model_fields.values() if f.alias]


@dataclass(frozen=True)
class ReportConfig:
    aggregation: AggregationType
    entity_type: EntityType
    row_model: type[ReportRow]
    fields: tuple[str, ...]
    format: str = "GZIP_JSON"

    def validate_rows(self, data: Any) -> list[ReportRow]:
        """Raises pydantic.ValidationError when any row does not match."""
        return TypeAdapter(list[self.row_model]).validate_python(data)


def _config(aggregation: AggregationType, entity_type: EntityType, row_model: type[ReportRow]) -> ReportConfig:
    return ReportConfig(
        aggregation=aggregation,
        entity_type=entity_type,
        row_model=row_model,
        fields=tuple(_fields_for(row_model)),
    )


REPORT_CONFIGS: dict[tuple[AggregationType, EntityType], ReportConfig] = {
    (AggregationType.HOURLY, EntityType.TARGET): _config(AggregationType.HOURLY, EntityType.TARGET, HourlyTargetRow),
    (AggregationType.HOURLY, EntityType.PRODUCT): _config(AggregationType.HOURLY, EntityType.PRODUCT, HourlyProductRow),
    (AggregationType.DAILY, EntityType.TARGET): _config(AggregationType.DAILY, EntityType.TARGET, DailyTargetRow),
    (AggregationType.DAILY, EntityType.PRODUCT): _config(AggregationType.DAILY, EntityType.PRODUCT, DailyProductRow),
}


def get_report_config(aggregation: str, entity_type: str) -> ReportConfig:
    return REPORT_CONFIGS[(AggregationType(aggregation), EntityType(entity_type))]
