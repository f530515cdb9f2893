import pytest

from orderbot.services.errors import MalformedAddress
from orderbot.services.phone_identity import Channel, canonicalize, for_channel


class TestCanonicalize:
    def test_all_observed_formats_share_one_key(self):
        keys = {
            canonicalize("whatsapp:+966500000000"),
            canonicalize("+966500000000"),
            canonicalize("966500000000"),
        }
        assert keys == {"966500000000"}

    def test_is_idempotent(self):
        key = canonicalize("whatsapp:+966 50 000 0000")
        assert canonicalize(key) == key

    def test_prefix_is_case_insensitive(self):
        assert canonicalize("WhatsApp:+966500000000") == "966500000000"

    def test_strips_separators(self):
        assert canonicalize("+966 (50) 000-0000") == "966500000000"

    def test_arabic_indic_digits(self):
        assert canonicalize("+٩٦٦٥٠٠٠٠٠٠٠٠") == "966500000000"

    @pytest.mark.parametrize("raw", [None, "", "   ", "whatsapp:", "not a phone"])
    def test_malformed(self, raw):
        with pytest.raises(MalformedAddress):
            canonicalize(raw)


class TestForChannel:
    def test_whatsapp(self):
        assert for_channel("966500000000", Channel.WHATSAPP) == "whatsapp:+966500000000"

    def test_e164(self):
        assert for_channel("966500000000", Channel.E164) == "+966500000000"

    def test_backend(self):
        assert for_channel("966500000000", Channel.BACKEND) == "966500000000"

    def test_rendering_round_trips_to_key(self):
        for channel in Channel:
            assert canonicalize(for_channel("966500000000", channel)) == "966500000000"
