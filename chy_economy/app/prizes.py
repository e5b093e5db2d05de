"""
=============================================================================
CHY ECONOMY - Calculadora de Premios por Puesto
=============================================================================
Función pura: puesto + pozo -> premio. Sin I/O y sin llamadas al Ledger;
quien liquida invoca el Ledger una vez por ganador con `prize_payout` y la
clave de `derive_payout_key(competition_id, rank)`.
=============================================================================
"""

from decimal import Decimal, ROUND_FLOOR
from typing import Dict


class PrizeCalculator:
    """
    Tabla fija de reparto del pozo (suma 100%):

    - Puesto 1: 25%
    - Puesto 2: 15%
    - Puesto 3: 10%
    - Puestos 4-10: 7, 6, 5, 4, 4, 3, 3%
    - Puestos 11-20: 1.8% cada uno

    Fuera de 1..20 el premio es 0.
    """

    PRIZE_DISTRIBUTION: Dict[int, Decimal] = {
        1: Decimal("0.25"),
        2: Decimal("0.15"),
        3: Decimal("0.10"),
        4: Decimal("0.07"),
        5: Decimal("0.06"),
        6: Decimal("0.05"),
        7: Decimal("0.04"),
        8: Decimal("0.04"),
        9: Decimal("0.03"),
        10: Decimal("0.03"),
        **{rank: Decimal("0.018") for rank in range(11, 21)},
    }

    TABLE_SIZE = len(PRIZE_DISTRIBUTION)

    @classmethod
    def prize_for_rank(cls, rank: int, prize_pool: int) -> int:
        """floor(pozo x porcentaje del puesto); 0 fuera de la tabla."""
        percentage = cls.PRIZE_DISTRIBUTION.get(rank)
        if percentage is None or prize_pool <= 0:
            return 0
        prize = (Decimal(prize_pool) * percentage).to_integral_value(rounding=ROUND_FLOOR)
        return int(prize)

    @classmethod
    def distribute_all(cls, prize_pool: int, participant_count: int) -> Dict[int, int]:
        """
        Reparto completo para los puestos 1..min(20, participantes).
        Los puestos con premio 0 (pozos muy pequeños) se omiten.
        """
        prizes: Dict[int, int] = {}
        max_winners = min(cls.TABLE_SIZE, participant_count)

        for rank in range(1, max_winners + 1):
            prize = cls.prize_for_rank(rank, prize_pool)
            if prize > 0:
                prizes[rank] = prize

        return prizes

    @classmethod
    def describe(cls, prize_pool: int, participant_count: int) -> str:
        """Breakdown legible del reparto. Útil para logs."""
        prizes = cls.distribute_all(prize_pool, participant_count)
        lines = [f"Pozo {prize_pool} CHY | Participantes: {participant_count}"]
        for rank, amount in prizes.items():
            lines.append(f"  - Puesto {rank}: {amount} CHY ({cls.PRIZE_DISTRIBUTION[rank] * 100}%)")
        lines.append(f"  - Sin repartir (redondeo): {prize_pool - sum(prizes.values())} CHY")
        return "\n".join(lines)


prize_for_rank = PrizeCalculator.prize_for_rank
distribute_all = PrizeCalculator.distribute_all
