"""Matched betting: evaluates UK bookmaker promotions.

Promotions come from a curated catalogue. Without loaded accounts every
bookmaker counts as not signed up, so only sign-up offers are eligible.
"""

import uuid
from datetime import timedelta
from typing import Optional

from services.scanners.types import BookmakerAccount, MatchedBetOpportunity, Promotion
from utils.utcnow import utcnow

UK_BOOKMAKERS = [
    {"key": "bet365", "name": "Bet365", "min_deposit": 5},
    {"key": "betfair", "name": "Betfair", "min_deposit": 5},
    {"key": "paddypower", "name": "Paddy Power", "min_deposit": 5},
    {"key": "williamhill", "name": "William Hill", "min_deposit": 10},
    {"key": "ladbrokes", "name": "Ladbrokes", "min_deposit": 5},
    {"key": "coral", "name": "Coral", "min_deposit": 5},
    {"key": "skybet", "name": "Sky Bet", "min_deposit": 5},
    {"key": "betway", "name": "Betway", "min_deposit": 10},
    {"key": "888sport", "name": "888sport", "min_deposit": 10},
    {"key": "unibet", "name": "Unibet", "min_deposit": 10},
]


def promotion_catalogue() -> list[Promotion]:
    now = utcnow()
    next_week = now + timedelta(days=7)
    next_month = now + timedelta(days=30)

    return [
        # Sign-up offers
        Promotion(
            id="bet365-signup", bookmaker="Bet365", bookmaker_key="bet365", type="signup_bonus",
            title="Bet £10 Get £30 in Free Bets",
            description="New customers only. Deposit and bet £10 on any sport, get £30 in free bets.",
            value=30, expected_value=25, min_odds=1.2, min_deposit=10, wager_requirement=1,
            qualifying_loss=0.5, is_new_customer=True, expires_at=next_month,
            terms=["New customers only", "Qualifying bet at odds of 1/5 or greater", "Free bets expire after 30 days"],
        ),
        Promotion(
            id="betfair-signup", bookmaker="Betfair", bookmaker_key="betfair", type="signup_bonus",
            title="Get £20 in Free Bets When You Bet £5",
            description="Place a £5 bet and receive £20 in free bets on the Sportsbook.",
            value=20, expected_value=16, min_odds=2.0, min_deposit=5, wager_requirement=1,
            qualifying_loss=0.25, is_new_customer=True, expires_at=next_month,
            terms=["New customers only", "Min odds 2.0", "7 day expiry on free bets"],
        ),
        Promotion(
            id="paddypower-signup", bookmaker="Paddy Power", bookmaker_key="paddypower", type="risk_free",
            title="Money Back as Cash if Your First Bet Loses (up to £20)",
            description="Place your first bet and if it loses, get your stake back as cash up to £20.",
            value=20, expected_value=18, min_odds=1.5, min_deposit=10, wager_requirement=0,
            qualifying_loss=0, is_new_customer=True, expires_at=next_month,
            terms=["New customers only", "First single bet only", "Cash refund, not free bet"],
        ),
        Promotion(
            id="williamhill-signup", bookmaker="William Hill", bookmaker_key="williamhill", type="signup_bonus",
            title="Bet £10 Get £40 in Free Bets",
            description="Bet £10 at odds of 1/2 or greater and receive £40 in free bets.",
            value=40, expected_value=33, min_odds=1.5, min_deposit=10, wager_requirement=1,
            qualifying_loss=0.5, is_new_customer=True, expires_at=next_month,
            terms=["New online customers only", "Min odds 1/2 (1.5)", "30 day expiry"],
        ),
        Promotion(
            id="skybet-signup", bookmaker="Sky Bet", bookmaker_key="skybet", type="signup_bonus",
            title="Bet £10 Get £30 in Free Bets",
            description="Place a £10 bet and get £30 in free bets.",
            value=30, expected_value=25, min_odds=1.5, min_deposit=10, wager_requirement=1,
            qualifying_loss=0.5, is_new_customer=True, expires_at=next_month,
            terms=["New customers only", "First single bet only", "30 day expiry"],
        ),
        # Reload offers for existing customers
        Promotion(
            id="bet365-acca-insurance", bookmaker="Bet365", bookmaker_key="bet365", type="acca_insurance",
            title="Acca Bonus - Get Up To 70% Extra Winnings",
            description="Place a pre-match accumulator and receive up to 70% bonus on winnings.",
            value=0, expected_value=5, min_odds=1.2,
            terms=["3+ selections required", "All selections must be pre-match"],
        ),
        Promotion(
            id="betfair-free-bet-club", bookmaker="Betfair", bookmaker_key="betfair", type="free_bet",
            title="Free Bet Club - Bet £20 Get £5 Weekly",
            description="Place £20 in qualifying bets each week to receive a £5 free bet.",
            value=5, expected_value=4, min_odds=1.5, wager_requirement=20, qualifying_loss=1,
            terms=["Place 5x £4 bets at min odds 1.5", "7 day expiry"],
        ),
        Promotion(
            id="ladbrokes-enhanced-odds", bookmaker="Ladbrokes", bookmaker_key="ladbrokes", type="enhanced_odds",
            title="Ladbrokes Boost - Enhanced Odds Daily",
            description="One enhanced price boost per day on selected markets.",
            value=10, expected_value=2,
            terms=["One boost per customer per day", "Max stake applies"],
        ),
        Promotion(
            id="coral-acca-insurance", bookmaker="Coral", bookmaker_key="coral", type="acca_insurance",
            title="Acca Insurance - Get Stake Back If One Leg Loses",
            description="Place a 5+ fold accumulator and get your stake back as a free bet if one leg lets you down.",
            value=0, expected_value=3, min_odds=1.2,
            terms=["5+ selections required", "Stake returned as free bet"],
        ),
        Promotion(
            id="888sport-weekly", bookmaker="888sport", bookmaker_key="888sport", type="free_bet",
            title="£10 Weekly Free Bet",
            description="Opt in and bet £25+ during the week to receive a £10 free bet.",
            value=10, expected_value=8, min_odds=1.5, wager_requirement=25, qualifying_loss=1.25,
            expires_at=next_week,
            terms=["Must opt in", "Min £25 qualifying bets at 1.5+ odds"],
        ),
    ]


def calculate_lay_stake(back_stake: float, back_odds: float, lay_odds: float, commission: float = 0.02) -> dict:
    """Lay stake = back stake * back odds / (lay odds - commission)."""
    lay_stake = (back_stake * back_odds) / (lay_odds - commission)
    liability = lay_stake * (lay_odds - 1)
    profit_if_back_wins = back_stake * (back_odds - 1) - liability
    profit_if_lay_wins = lay_stake * (1 - commission) - back_stake
    qualifying_loss = abs((profit_if_back_wins + profit_if_lay_wins) / 2)
    return {
        "lay_stake": round(lay_stake, 2),
        "liability": round(liability, 2),
        "qualifying_loss": round(qualifying_loss, 2),
        "profit_if_back_wins": round(profit_if_back_wins, 2),
        "profit_if_lay_wins": round(profit_if_lay_wins, 2),
    }


def free_bet_value(amount: float, expected_odds: float = 4.0, commission: float = 0.02) -> float:
    retention = ((expected_odds - 1) / expected_odds) * (1 - commission) - 0.02
    return round(amount * retention, 2)


def snr_free_bet_profit(stake: float, back_odds: float, lay_odds: float, commission: float = 0.02) -> float:
    """Stake-not-returned free bet: only the winnings are at stake on the back side."""
    lay_stake = (stake * (back_odds - 1)) / (lay_odds - commission)
    liability = lay_stake * (lay_odds - 1)
    profit_if_back_wins = stake * (back_odds - 1) - liability
    profit_if_lay_wins = lay_stake * (1 - commission)
    return round((profit_if_back_wins + profit_if_lay_wins) / 2, 2)


class MatchedBettingScanner:
    def __init__(
        self,
        include_signup_offers: bool = True,
        include_reload_offers: bool = True,
        min_expected_value: float = 0.0,
        exchange_commission: float = 0.02,
        accounts: Optional[list[BookmakerAccount]] = None,
    ):
        self.include_signup_offers = include_signup_offers
        self.include_reload_offers = include_reload_offers
        self.min_expected_value = min_expected_value
        self.exchange_commission = exchange_commission
        self.accounts = {a.bookmaker_key: a for a in accounts or []}

    def available_promotions(self) -> list[Promotion]:
        now = utcnow()
        available = []
        for promo in promotion_catalogue():
            account = self.accounts.get(promo.bookmaker_key)
            signed_up = bool(account and account.signed_up)
            if promo.expires_at and promo.expires_at < now:
                continue
            if account and promo.id in account.claimed_promotions:
                continue
            if promo.is_new_customer and signed_up:
                continue
            if not promo.is_new_customer and not signed_up:
                continue
            if promo.is_new_customer and not self.include_signup_offers:
                continue
            if not promo.is_new_customer and not self.include_reload_offers:
                continue
            if promo.expected_value < self.min_expected_value:
                continue
            available.append(promo)
        return available

    def create_opportunity(self, promo: Promotion) -> MatchedBetOpportunity:
        commission = self.exchange_commission
        lay_odds = promo.min_odds + 0.02 if promo.min_odds else 3.0
        back_odds = promo.min_odds or 3.0
        back_stake = promo.min_deposit or 10
        lay_stake = 0.0
        expected_profit = promo.expected_value
        strategy = "matched_bet"
        risk_level = "low"

        if promo.type in ("signup_bonus", "free_bet"):
            lay = calculate_lay_stake(back_stake, back_odds, lay_odds, commission)
            lay_stake = lay["lay_stake"]
            free_bet_profit = snr_free_bet_profit(promo.value, 4.0, 4.02, commission)
            expected_profit = free_bet_profit - lay["qualifying_loss"]
            steps = [
                f"1. Sign up at {promo.bookmaker} using the offer link",
                f"2. Deposit £{back_stake:g} minimum",
                f"3. Find a market with back odds ~{back_odds:.2f} at {promo.bookmaker}",
                "4. Check Betfair Exchange for similar lay odds",
                f"5. Place £{back_stake:g} back bet at {promo.bookmaker}",
                f"6. Place £{lay['lay_stake']:.2f} lay bet on Betfair (liability: £{lay['liability']:.2f})",
                f"7. Wait for bet to settle - expect a qualifying loss of ~£{lay['qualifying_loss']:.2f}",
                "8. When the free bet arrives, use it at odds of 4.0+ and lay off",
                f"9. Expected profit from free bet: £{free_bet_profit:.2f}",
            ]
        elif promo.type == "risk_free":
            strategy = "risk_free"
            risk_level = "medium"  # left unmatched
            steps = [
                f"1. Sign up at {promo.bookmaker}",
                f"2. Deposit £{back_stake:g}",
                f"3. Place first bet at odds {back_odds:.2f}+",
                "4. Do not lay this bet",
                "5. If the bet wins: collect winnings",
                f"6. If the bet loses: receive a cash refund up to £{promo.value:g}",
                f"7. Expected value: £{promo.expected_value:.2f}",
            ]
        elif promo.type == "enhanced_odds":
            strategy = "arb_unlock"
            steps = [
                f"1. Find today's enhanced odds offer at {promo.bookmaker}",
                "2. Check if lay odds are available on the exchange",
                "3. If an arb exists: back the enhanced price and lay on the exchange",
                "4. Max stake limits often apply (£10-£50)",
            ]
        elif promo.type == "acca_insurance":
            risk_level = "high"
            steps = [
                f"1. Build a 5+ selection accumulator at {promo.bookmaker}",
                "2. Each leg must meet the minimum odds (usually 1.2)",
                "3. If one leg loses, receive the stake back as a free bet",
                "4. Consider smaller stakes to manage variance",
            ]
        elif promo.type == "reload_bonus":
            back_stake = promo.wager_requirement or 20
            lay = calculate_lay_stake(back_stake, back_odds, lay_odds, commission)
            lay_stake = lay["lay_stake"]
            expected_profit = free_bet_value(promo.value) - lay["qualifying_loss"]
            steps = [
                f"1. Opt into the {promo.bookmaker} offer",
                f"2. Place qualifying bets totaling £{back_stake:g}",
                "3. Match each bet on the exchange",
                f"4. Receive £{promo.value:g} free bet when qualified",
            ]
        else:
            steps = [f"1. Check offer terms at {promo.bookmaker}"]

        profit_rate = expected_profit / (back_stake + lay_stake) * 100
        return MatchedBetOpportunity(
            id=str(uuid.uuid4()),
            promotion=promo,
            strategy=strategy,
            expected_profit=round(expected_profit, 2),
            profit_rate=round(profit_rate, 2),
            confidence=self.confidence(promo),
            steps=steps,
            back_stake=back_stake,
            lay_stake=lay_stake,
            lay_odds=lay_odds,
            lay_commission=commission,
            risk_level=risk_level,
            time_to_complete=self.time_to_complete(promo),
            notes=(
                "New customer offer - can only be claimed once"
                if promo.is_new_customer
                else "Reload offer - may be available weekly/monthly"
            ),
        )

    @staticmethod
    def confidence(promo: Promotion) -> int:
        confidence = 70
        if promo.expected_value >= 30:
            confidence += 15
        elif promo.expected_value >= 20:
            confidence += 10
        elif promo.expected_value >= 10:
            confidence += 5
        if promo.is_new_customer:
            confidence += 10
        if promo.wager_requirement == 0:
            confidence += 5
        if promo.type == "risk_free":
            confidence += 10
        if promo.type == "acca_insurance":
            confidence -= 20
        return min(100, max(0, confidence))

    @staticmethod
    def time_to_complete(promo: Promotion) -> int:
        minutes = 15
        if promo.is_new_customer:
            minutes += 15
        if promo.type == "acca_insurance":
            minutes += 30
        if promo.wager_requirement and promo.wager_requirement > 20:
            minutes += 15
        return minutes

    async def scan(self) -> list[MatchedBetOpportunity]:
        opportunities = [self.create_opportunity(p) for p in self.available_promotions()]
        opportunities.sort(key=lambda o: o.expected_profit, reverse=True)
        return opportunities

    async def get_top_opportunities(self, limit: int = 10) -> list[MatchedBetOpportunity]:
        return (await self.scan())[:limit]
