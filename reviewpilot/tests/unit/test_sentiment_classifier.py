"""
Unit tests for rating-driven sentiment classification
"""
import pytest

from reviewpilot.services.sentiment_classifier import Sentiment, classify_sentiment


class TestClassifySentiment:

    def test_two_stars_is_negative(self):
        assert classify_sentiment(2, "It was fine I guess").sentiment == Sentiment.NEGATIVE

    def test_five_stars_is_positive(self):
        assert classify_sentiment(5, "Loved it").sentiment == Sentiment.POSITIVE

    def test_three_stars_is_negative(self):
        """Test the 3-star boundary falls on the negative side"""
        assert classify_sentiment(3, "Pretty good overall").sentiment == Sentiment.NEGATIVE

    def test_four_stars_is_positive(self):
        assert classify_sentiment(4, "").sentiment == Sentiment.POSITIVE

    def test_glowing_text_cannot_flip_low_rating(self):
        """Test keyword signals never cross the rating boundary"""
        result = classify_sentiment(3, "Amazing, delicious, fantastic, great, perfect, wonderful!")

        assert result.sentiment == Sentiment.NEGATIVE
        assert -1.0 <= result.score <= -0.05
        assert "positive_keyword:amazing" in result.signals
        assert "exclamation" in result.signals

    def test_harsh_text_cannot_flip_high_rating(self):
        result = classify_sentiment(4, "Cold, slow, rude, dirty, bland, terrible, awful, stale, burnt")

        assert result.sentiment == Sentiment.POSITIVE
        assert 0.05 <= result.score <= 1.0

    def test_apology_worthy_signal(self):
        result = classify_sentiment(1, "I got food poisoning and it was the worst night")

        assert "apology_worthy:food poisoning" in result.signals
        assert "apology_worthy:worst" in result.signals
        assert result.score == -1.0

    def test_empty_text_signal(self):
        result = classify_sentiment(5, "   ")

        assert result.signals == ["rating:5", "empty_text"]
        assert result.score == 0.8

    def test_keywords_match_whole_words_only(self):
        """Test 'cold' does not match inside 'scolded'"""
        result = classify_sentiment(2, "The chef scolded nobody")
        assert not any(signal.startswith("negative_keyword:cold") for signal in result.signals)

    @pytest.mark.parametrize("rating", [1, 2, 3, 4, 5])
    def test_score_within_bounds(self, rating):
        result = classify_sentiment(rating, "great food but slow and cold service, never again!")
        assert -1.0 <= result.score <= 1.0

    @pytest.mark.parametrize("rating", [0, 6, -1, None])
    def test_invalid_rating_raises(self, rating):
        with pytest.raises(ValueError):
            classify_sentiment(rating, "text")
