"""Tests for vital sign validation and critical classification."""

import pytest

from encounter_src.errors import InvalidVitals, ValidationError
from encounter_src.vitals import VITAL_RANGES, validate_vitals


class TestValidateVitals:
    """Tests for validate_vitals."""

    def test_normal_reading(self):
        """Normal values pass with nothing critical."""
        result = validate_vitals({
            "temperature": 98.6,
            "heart_rate": 72,
            "blood_pressure_systolic": 120,
            "blood_pressure_diastolic": 80,
            "respiratory_rate": 16,
            "oxygen_saturation": 98,
        })

        assert result["critical"] == {}
        assert result["warnings"] == {}
        assert result["values"]["temperature"] == 98.6
        assert result["values"]["temperature_unit"] == "F"

    def test_high_fever_is_valid_but_critical(self):
        """106°F is plausible, so it is stored, and it is critical."""
        result = validate_vitals({"temperature": 106, "temperature_unit": "F"})

        assert result["values"]["temperature"] == 106
        assert result["critical"] == {"temperature": 106}
        assert "temperature" in result["warnings"]

    def test_implausible_heart_rate_rejected(self):
        """A heart rate of 400 is rejected with a field-level error."""
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"heart_rate": 400})

        assert "heart_rate" in exc_info.value.errors

    def test_invalid_vitals_is_validation_error(self):
        with pytest.raises(ValidationError):
            validate_vitals({"oxygen_saturation": 101})

    def test_celsius_ranges(self):
        """Celsius readings use the Celsius bands."""
        result = validate_vitals({"temperature": 40.5, "temperature_unit": "C"})
        assert result["critical"] == {"temperature": 40.5}

        with pytest.raises(InvalidVitals):
            validate_vitals({"temperature": 98.6, "temperature_unit": "C"})

    def test_unknown_unit_rejected(self):
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"temperature": 98.6, "temperature_unit": "K"})

        assert "temperature_unit" in exc_info.value.errors

    def test_unknown_field_rejected(self):
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"heart_rate": 70, "blood_sugar": 90})

        assert exc_info.value.errors == {"blood_sugar": "Unknown vital sign"}

    def test_non_numeric_value_rejected(self):
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"heart_rate": "fast"})

        assert exc_info.value.errors["heart_rate"] == "Must be a number"

    def test_numeric_strings_accepted(self):
        result = validate_vitals({"heart_rate": "72"})
        assert result["values"]["heart_rate"] == 72.0

    def test_all_errors_reported_together(self):
        """Every bad field is reported, not just the first."""
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"heart_rate": 400, "respiratory_rate": 1})

        assert set(exc_info.value.errors) == {"heart_rate", "respiratory_rate"}

    def test_diastolic_must_be_below_systolic(self):
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"blood_pressure_systolic": 100, "blood_pressure_diastolic": 120})

        assert "blood_pressure_diastolic" in exc_info.value.errors

    def test_combined_blood_pressure(self):
        result = validate_vitals({"blood_pressure": "190/95"})

        assert result["values"]["blood_pressure_systolic"] == 190.0
        assert result["values"]["blood_pressure_diastolic"] == 95.0
        assert "blood_pressure" not in result["values"]
        assert result["critical"] == {"blood_pressure_systolic": 190.0}

    @pytest.mark.parametrize("reading", ["120", "120/eighty", "120/80/60", 120])
    def test_malformed_combined_blood_pressure(self, reading):
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"blood_pressure": reading})

        assert set(exc_info.value.errors) == {"blood_pressure"}

    def test_combined_and_separate_blood_pressure_rejected(self):
        with pytest.raises(InvalidVitals) as exc_info:
            validate_vitals({"blood_pressure": "120/80", "blood_pressure_systolic": 120})

        assert "blood_pressure" in exc_info.value.errors

    def test_low_oxygen_is_critical(self):
        result = validate_vitals({"oxygen_saturation": 85})
        assert result["critical"] == {"oxygen_saturation": 85}

    def test_weight_in_pounds(self):
        result = validate_vitals({"weight": 180, "weight_unit": "lbs"})
        assert result["values"]["weight_unit"] == "lbs"
        assert result["critical"] == {}

    def test_empty_reading_rejected(self):
        with pytest.raises(InvalidVitals):
            validate_vitals({})


class TestVitalRanges:
    """Tests for the range table."""

    def test_critical_bands_inside_plausible_bounds(self):
        """Every critical threshold is itself a plausible value."""
        for name, bounds in VITAL_RANGES.items():
            if bounds.critical_min is not None:
                assert bounds.min <= bounds.critical_min, name
            if bounds.critical_max is not None:
                assert bounds.critical_max <= bounds.max, name
