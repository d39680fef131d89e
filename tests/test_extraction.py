import asyncio
import os
import sys

import pytest

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from voicequote.schemas.contractor import Contractor
from voicequote.schemas.extraction import ExtractionResult
from voicequote.services.exceptions import DownstreamServiceError, ExtractionFailure
from voicequote.services.extraction import (
    ExtractionPipeline,
    GeminiQuoteExtractor,
    KeywordQuoteExtractor,
    parse_llm_extraction,
)

CONTRACTOR = Contractor(id="CTR-00001", phone="14155550100", business_name="Bay Area Plumbing Co.")


def test_keyword_extractor_reads_items_prices_and_customer() -> None:
    transcript = (
        "Customer name is Dana Whitfield at 42 Elm Street, phone 415-555-0199. "
        "Replace the kitchen faucet for 225 and install two comfort height toilets at $450. "
        "Also add a wax ring."
    )

    result = asyncio.run(KeywordQuoteExtractor().extract(transcript, CONTRACTOR))

    assert [item.item_code for item in result.items] == ["FAUCET_KITCHEN", "TOILET_COMFORT", "WAX_RING"]
    faucet, toilets, wax_ring = result.items
    assert faucet.unit_price == 225
    assert toilets.quantity == 2
    assert toilets.unit_price == 450
    assert toilets.total_price == 900
    assert wax_ring.unit_price == 25
    assert [item.display_order for item in result.items] == [0, 1, 2]
    assert result.metadata.customer_name == "Dana Whitfield"
    assert result.metadata.customer_address == "42 Elm Street"
    assert result.metadata.customer_phone == "415-555-0199"
    assert result.confidence_score == 0.7


def test_keyword_extractor_skips_out_of_range_prices() -> None:
    transcript = "Replace the kitchen faucet for " + "9" * 400 + " and add a wax ring."

    result = asyncio.run(KeywordQuoteExtractor().extract(transcript, CONTRACTOR))

    assert [item.item_code for item in result.items] == ["WAX_RING"]
    assert result.items[0].display_order == 0


def test_parse_llm_extraction_accepts_items_and_metadata() -> None:
    raw = """```json
    {"items": [{"description": "Toilet Reset and Repair", "quantity": 1, "unit": "each",
                "unit_price": 275, "category": "repairs", "confidence": 0.92}],
     "metadata": {"customer_name": "Sam Ortiz", "project_description": "Wobbly toilet"},
     "confidence_score": 0.9}
    ```"""

    result = parse_llm_extraction(raw)

    assert len(result.items) == 1
    assert result.items[0].total_price == 275
    assert result.items[0].confidence_score == 0.92
    assert result.metadata.customer_name == "Sam Ortiz"
    assert result.confidence_score == 0.9


def test_parse_llm_extraction_accepts_labor_and_material_costs() -> None:
    raw = (
        '{"quote_items": [{"description": "Water Heater Swap", "labor_cost": 400, "material_cost": 900},'
        ' {"description": "Haul Away", "total": 75, "price_unclear": true},'
        ' {"description": "Mystery", "notes": "no price"}], "confidence_score": 0.8}'
    )

    result = parse_llm_extraction(raw)

    assert [item.description for item in result.items] == ["Water Heater Swap", "Haul Away"]
    assert result.items[0].unit_price == 1300
    assert result.items[1].confidence_score == 0.5


def test_parse_llm_extraction_skips_non_finite_prices() -> None:
    raw = (
        '{"items": [{"description": "Toilet", "unit_price": 1e999},'
        ' {"description": "Valve", "unit_price": "Infinity"},'
        ' {"description": "Heater", "labor_cost": 1e308, "material_cost": 1e308},'
        ' {"description": "Pipe", "quantity": 1e300, "unit_price": 5},'
        ' {"description": "Wax Ring", "unit_price": 12.5, "quantity": NaN}]}'
    )

    result = parse_llm_extraction(raw)

    assert [item.description for item in result.items] == ["Wax Ring"]
    assert result.items[0].quantity == 1.0
    assert result.items[0].total_price == 12.5


def test_parse_llm_extraction_malformed_is_empty() -> None:
    result = parse_llm_extraction("I could not find anything")

    assert result.items == []
    assert result.confidence_score == 0.0


class FakeGeminiClient:
    def __init__(self, response=None, error=None) -> None:
        self.response = response
        self.error = error

    async def generate(self, contents, *, system_instruction=None, json_output=False, timeout=None):
        if self.error:
            raise self.error
        return self.response


def test_gemini_extractor_falls_back_on_error() -> None:
    extractor = GeminiQuoteExtractor(FakeGeminiClient(error=DownstreamServiceError("quota")))

    result = asyncio.run(extractor.extract("clear the drain for 175", CONTRACTOR))

    assert [item.item_code for item in result.items] == ["DRAIN_CLEAR"]


def test_pipeline_rejects_empty_extraction() -> None:
    pipeline = ExtractionPipeline(KeywordQuoteExtractor())

    with pytest.raises(ExtractionFailure) as excinfo:
        asyncio.run(pipeline.extract("the customer seemed nice", CONTRACTOR))

    assert "couldn't find billable items" in str(excinfo.value)


def test_pipeline_rejects_low_confidence() -> None:
    class LowConfidence:
        async def extract(self, transcript, contractor):
            return parse_llm_extraction(
                '{"items": [{"description": "Something", "unit_price": 10}], "confidence_score": 0.1}'
            )

    pipeline = ExtractionPipeline(LowConfidence(), min_confidence=0.3)

    with pytest.raises(ExtractionFailure):
        asyncio.run(pipeline.extract("something for 10", CONTRACTOR))


def test_pipeline_renumbers_items() -> None:
    class Unordered:
        async def extract(self, transcript, contractor):
            result = parse_llm_extraction(
                '{"items": [{"description": "A", "unit_price": 10}, {"description": "B", "unit_price": 20}],'
                ' "confidence_score": 0.9}'
            )
            items = [item.model_copy(update={"display_order": 5}) for item in result.items]
            return ExtractionResult(items=items, metadata=result.metadata, confidence_score=0.9)

    result = asyncio.run(ExtractionPipeline(Unordered()).extract("a and b", CONTRACTOR))

    assert [item.display_order for item in result.items] == [0, 1]
