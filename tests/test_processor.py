import asyncio

import pytest

from pipeline import processor
from pipeline.llm_provider import ProviderTimeoutError
from pipeline.processor import ProcessingError, process_meeting


def test_no_minutes_skips_model_call(mocker, make_meetings):
    mocker.patch.object(processor, "extract_meeting_text", return_value=None)
    get_provider = mocker.patch.object(processor, "get_provider")

    result = asyncio.run(process_meeting(make_meetings(1)[0]))

    assert result.pdf_text is None
    assert result.decisions is None
    get_provider.assert_not_called()


def test_unconfigured_provider_keeps_text_without_decisions(mocker, make_meetings):
    mocker.patch.object(processor, "extract_meeting_text", return_value="minutes")
    mocker.patch.object(processor, "get_provider", return_value=None)

    result = asyncio.run(process_meeting(make_meetings(1)[0]))

    assert result.pdf_text == "minutes"
    assert result.decisions is None


def test_decisions_are_attached(mocker, make_meetings, sample_decision):
    mocker.patch.object(processor, "extract_meeting_text", return_value="minutes")
    provider = mocker.MagicMock()
    mocker.patch.object(processor, "get_provider", return_value=provider)
    extract = mocker.patch.object(processor, "extract_meeting_decisions", return_value=[sample_decision])

    result = asyncio.run(process_meeting(make_meetings(1)[0]))

    assert result.decisions == [sample_decision]
    extract.assert_called_once_with("minutes", provider)


def test_provider_failure_becomes_processing_error(mocker, make_meetings):
    mocker.patch.object(processor, "extract_meeting_text", return_value="minutes")
    mocker.patch.object(processor, "get_provider", return_value=mocker.MagicMock())
    mocker.patch.object(processor, "extract_meeting_decisions", side_effect=ProviderTimeoutError("slow"))

    with pytest.raises(ProcessingError, match="meeting 0"):
        asyncio.run(process_meeting(make_meetings(1)[0]))
