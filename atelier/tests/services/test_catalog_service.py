"""
Tests for materials, products and bills of materials.
"""

from decimal import Decimal

import pytest

from atelier.services import catalog_service
from atelier.services.exceptions import (
    MaterialNotFound,
    ProductNotFound,
    StageNotFound,
    ValidationError,
)


class TestCreateMaterial:
    def test_material_starts_with_nothing_reserved(self, test_db):
        material = catalog_service.create_material(
            "  Wool  ", "m", on_hand_quantity="12.5", unit_cost="4.20"
        )

        assert material["name"] == "Wool"
        assert Decimal(material["on_hand_quantity"]) == Decimal("12.5")
        assert Decimal(material["reserved_quantity"]) == 0
        assert Decimal(material["available_quantity"]) == Decimal("12.5")

    def test_validation_collects_errors(self, test_db):
        with pytest.raises(ValidationError) as exc_info:
            catalog_service.create_material("", "furlong", on_hand_quantity=-1, unit_cost=-2)

        assert len(exc_info.value.errors) == 4


class TestBillOfMaterials:
    def test_waste_is_included_in_quantity(self, pipeline):
        entry = catalog_service.add_bom_entry(
            pipeline["product_id"],
            catalog_service.create_material("Thread", "m", on_hand_quantity=500)["id"],
            "40",
            waste_percentage="12.5",
            stage_id=pipeline["stages"]["sew"],
        )

        assert Decimal(entry["total_quantity_with_waste"]) == Decimal("45")

    def test_duplicate_material_rejected(self, pipeline):
        with pytest.raises(ValidationError, match="already in the BOM"):
            catalog_service.add_bom_entry(pipeline["product_id"], pipeline["materials"]["linen"], 1)

    @pytest.mark.parametrize("quantity, waste", [(0, 0), (-1, 0), (1, 100), (1, -5)])
    def test_bad_quantities_rejected(self, pipeline, quantity, waste):
        with pytest.raises(ValidationError):
            catalog_service.add_bom_entry(
                pipeline["product_id"],
                pipeline["materials"]["linen"],
                quantity,
                waste_percentage=waste,
            )

    def test_unknown_references(self, pipeline):
        with pytest.raises(ProductNotFound):
            catalog_service.add_bom_entry(999, pipeline["materials"]["linen"], 1)
        with pytest.raises(MaterialNotFound):
            catalog_service.add_bom_entry(pipeline["product_id"], 999, 1)
        with pytest.raises(StageNotFound):
            catalog_service.add_bom_entry(
                pipeline["product_id"],
                catalog_service.create_material("Zip", "each")["id"],
                1,
                stage_id=999,
            )

    def test_get_product_lists_bom(self, pipeline):
        product = catalog_service.get_product(pipeline["product_id"])

        assert product["name"] == "Dishdasha"
        assert [e["material_id"] for e in product["bom_entries"]] == [
            pipeline["materials"]["linen"],
            pipeline["materials"]["silk"],
            pipeline["materials"]["buttons"],
        ]


class TestCosting:
    def test_breakdown_scales_by_quantity(self, pipeline):
        breakdown = catalog_service.calculate_materials_breakdown(pipeline["product_id"], 3)

        by_name = {row["material_name"]: row for row in breakdown}
        assert by_name["Silk lining"]["total_quantity_needed"] == Decimal("60")
        assert by_name["Silk lining"]["line_cost"] == Decimal("180")
        assert by_name["Buttons"]["stage_id"] == pipeline["stages"]["press"]

    def test_breakdown_rejects_non_positive_quantity(self, pipeline):
        with pytest.raises(ValidationError):
            catalog_service.calculate_materials_breakdown(pipeline["product_id"], 0)

    def test_unit_cost_includes_labor(self, pipeline):
        assert catalog_service.calculate_unit_cost(pipeline["product_id"]) == Decimal("91.25")

    def test_default_labor_cost(self, pipeline):
        product = catalog_service.create_product(
            "Scarf",
            bom=[{"material_id": pipeline["materials"]["silk"], "quantity_required": 2}],
        )

        cost = catalog_service.calculate_product_cost(product["id"], 2)

        # 2 m silk @3.00 plus the 20.00 default labor
        assert cost["labor_cost_per_unit"] == Decimal("20.00")
        assert cost["unit_cost"] == Decimal("26")
        assert cost["total_cost"] == Decimal("52")

    def test_labor_factor_scales_only_labor(self, pipeline):
        cost = catalog_service.calculate_product_cost(
            pipeline["product_id"], 1, labor_factor=1.5
        )

        assert cost["material_cost_per_unit"] == Decimal("81.25")
        assert cost["labor_cost_per_unit"] == Decimal("15")

    def test_unknown_product(self, test_db):
        with pytest.raises(ProductNotFound):
            catalog_service.calculate_unit_cost(1)


class TestStageRequirements:
    def test_requirement_is_upserted(self, pipeline):
        first = catalog_service.set_stage_requirement(
            pipeline["product_id"], pipeline["stages"]["press"]
        )
        second = catalog_service.set_stage_requirement(
            pipeline["product_id"], pipeline["stages"]["press"], is_required=False
        )

        assert first["id"] == second["id"]
        assert second["is_required"] is False
