"""Tests for the heuristic activity classifier."""

import pytest

from devmind.daemon.classifier import ActivityClassifier, ClassifierTables
from devmind.daemon.models import ActivityType


@pytest.fixture
def classifier():
    return ActivityClassifier()


class TestClassify:
    """Scoring and labeling."""

    def test_bug_fix_example(self, classifier):
        """Two keywords, two patterns and the base boost."""
        result = classifier.classify("Fixed login bug in auth.ts")

        assert result.type == ActivityType.BUG_FIX
        assert result.confidence == 75
        assert result.scores[ActivityType.FEATURE_ADD] == 35
        assert result.scores[ActivityType.DOCUMENTATION] == 10

    def test_reasoning_lists_top_three(self, classifier):
        result = classifier.classify("Fixed login bug in auth.ts")
        assert result.reasoning == (
            "Detected as bug_fix based on scores: bug_fix(75), feature_add(35), solution_design(30)"
        )

    def test_feature_add(self, classifier):
        result = classifier.classify("Implement new feature: create dashboard page with charts")
        assert result.type == ActivityType.FEATURE_ADD

    def test_documentation_from_code_comments(self, classifier):
        text = "Update the README guide\n/** documents the public API */\n// usage notes"
        result = classifier.classify(text)
        assert result.type == ActivityType.DOCUMENTATION

    def test_empty_text_falls_back_to_highest_boost(self, classifier):
        result = classifier.classify("")
        assert result.type == ActivityType.FEATURE_ADD
        assert result.confidence == 35

    def test_ties_keep_declaration_order(self):
        """Equal scores resolve to the earlier declared family."""
        tables = ClassifierTables.default().with_family(ActivityType.BUG_FIX, base_boost=35)
        result = ActivityClassifier(tables).classify("")
        assert result.type == ActivityType.BUG_FIX

    def test_history_boosts_recent_type(self, classifier):
        text = "Tweaked the settings"
        plain = classifier.classify(text)
        boosted = classifier.classify(text, [ActivityType.BUG_FIX] * 3)

        assert boosted.scores[ActivityType.BUG_FIX] == plain.scores[ActivityType.BUG_FIX] + 24
        assert boosted.type == ActivityType.BUG_FIX

    def test_history_window_is_last_ten(self, classifier):
        history = [ActivityType.BUG_FIX] * 5 + [ActivityType.TEST] * 10
        result = classifier.classify("", history)
        assert result.scores[ActivityType.BUG_FIX] == 25

    def test_history_accepts_strings_and_skips_unknown(self, classifier):
        result = classifier.classify("", ["code_change", "not_a_type"])
        assert result.scores[ActivityType.CODE_CHANGE] == 25

    def test_confidence_is_clamped(self, classifier):
        text = " ".join(["fix bug error exception debug crash issue resolve patch"] * 5)
        result = classifier.classify(text)
        assert result.confidence == 100

    @pytest.mark.parametrize("text", [None, 42, "🙂" * 1000, "\x00\x01"])
    def test_total_for_odd_input(self, classifier, text):
        result = classifier.classify(text)
        assert 0 <= result.confidence <= 100
        assert result.type in ActivityType

    def test_code_patterns_are_case_sensitive(self, classifier):
        code = "function handleLogin(user) {\n  return check(user);\n}"
        upper = "FUNCTION HANDLELOGIN(USER) {\n  RETURN CHECK(USER);\n}"
        assert classifier.classify(code).scores[ActivityType.CODE_CHANGE] > \
            classifier.classify(upper).scores[ActivityType.CODE_CHANGE]


class TestKeyElements:
    """Key element extraction."""

    def test_files_functions_classes(self, classifier):
        text = "def load_user(id): pass\nclass UserStore:\nfunction render() {}\nsee models.py and src/app.ts"
        elements = classifier.classify(text).key_elements

        assert "models.py" in elements.files
        assert "load_user" in elements.functions
        assert "render" in elements.functions
        assert elements.classes == ["UserStore"]

    def test_capped_at_five(self, classifier):
        text = " ".join(f"file{i}.py" for i in range(10))
        elements = classifier.extract_key_elements(text, ActivityType.CODE_CHANGE)
        assert len(elements.files) == 5

    def test_keywords_from_winning_family(self, classifier):
        result = classifier.classify("Fixed login bug in auth.ts")
        assert result.key_elements.keywords == ["fix", "bug"]
