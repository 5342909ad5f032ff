from __future__ import annotations

import unittest

import fakes  # noqa: F401  (puts python/ on sys.path)

from karlbot.models import InboundEvent
from karlbot.triggers import TriggerSet, extract_text


class ExtractTextTests(unittest.TestCase):
  def test_plain_body_wins(self) -> None:
    message = {
      "conversation": "karl hi",
      "extendedTextMessage": {"text": "other"},
    }
    self.assertEqual(extract_text(message), "karl hi")

  def test_falls_through_empty_fields(self) -> None:
    self.assertEqual(
      extract_text({"conversation": "", "extendedTextMessage": {"text": "quoted reply"}}),
      "quoted reply",
    )
    self.assertEqual(extract_text({"imageMessage": {"caption": "look karl"}}), "look karl")
    self.assertEqual(extract_text({"videoMessage": {"caption": "clip"}}), "clip")

  def test_no_text(self) -> None:
    self.assertEqual(extract_text({"stickerMessage": {}}), "")
    self.assertEqual(extract_text(None), "")


class TriggerSetTests(unittest.TestCase):
  def setUp(self) -> None:
    self.triggers = TriggerSet()

  def test_karl_in_any_case_triggers(self) -> None:
    for text in ("karl", "KARL what's up", "hey Karl", "@karl help", "Karl, are you there?"):
      with self.subTest(text=text):
        self.assertTrue(self.triggers.matches(text))

  def test_other_keywords_trigger(self) -> None:
    self.assertTrue(self.triggers.matches("can the assistant help"))
    self.assertTrue(self.triggers.matches("is this ai thing on"))

  def test_unrelated_text_does_not_trigger(self) -> None:
    for text in ("good morning everyone", "said hello", "", "   "):
      with self.subTest(text=text):
        self.assertFalse(self.triggers.matches(text))

  def test_custom_phrases(self) -> None:
    triggers = TriggerSet(keywords=("jarvis",), prefixes=("hey bot",), mention_keywords=("@jarvis",))
    self.assertTrue(triggers.matches("Hey bot what's new"))
    self.assertTrue(triggers.matches("ok JARVIS"))
    self.assertFalse(triggers.matches("karl hello"))
    self.assertTrue(triggers.mentions_bot("yo @jarvis"))

  def test_mentions_bot(self) -> None:
    self.assertTrue(self.triggers.mentions_bot("@Karl help"))
    self.assertFalse(self.triggers.mentions_bot("ask the assistant"))


class InboundEventTests(unittest.TestCase):
  def test_direct_message_from_wa_message(self) -> None:
    event = InboundEvent.from_wa_message(
      {
        "key": {"remoteJid": "263771234567@s.whatsapp.net", "fromMe": False, "id": "X1"},
        "message": {"conversation": "karl hi"},
      }
    )
    assert event is not None
    self.assertFalse(event.is_group)
    self.assertEqual(event.sender_id, "263771234567@s.whatsapp.net")
    self.assertEqual(event.display_name, "User")
    self.assertIsNone(event.mentioned_participant_id)

  def test_own_message_without_content(self) -> None:
    event = InboundEvent.from_wa_message({"key": {"remoteJid": "1@s.whatsapp.net", "fromMe": True}})
    assert event is not None
    self.assertTrue(event.from_me)
    self.assertFalse(event.has_content)
    self.assertEqual(event.raw_text, "")


if __name__ == "__main__":
  unittest.main()
