# apps/board/positions.py

"""
Espaço de posições - chaves fracionárias para ordenar irmãos

Cada coluna (dentro do board) e cada cartão (dentro da coluna) tem uma
chave decimal. Inserir entre dois vizinhos gera uma chave estritamente
entre eles, sem tocar nas chaves existentes. Quando a precisão acaba,
o chamador rebalanceia a lista inteira com chaves igualmente espaçadas.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_EVEN
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import PrecisionExhausted

DEFAULT_STEP = Decimal('1')
DEFAULT_DECIMALS = 10


def parse_key(value) -> Optional[Decimal]:
    """Converte o valor vindo do fio/banco em Decimal (None continua None)"""
    if value is None or value == '':
        return None
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value))
    except InvalidOperation:
        raise ValueError(f"Chave de posição inválida: {value!r}")


def format_key(key) -> Optional[str]:
    """Serializa a chave como string decimal sem notação científica"""
    if key is None:
        return None
    return format(parse_key(key), 'f')


def sort_siblings(pairs) -> List[Tuple[str, Decimal]]:
    """Ordena pares (id, chave) pela chave, com o id como desempate"""
    return sorted(
        ((str(item_id), parse_key(key)) for item_id, key in pairs),
        key=lambda pair: (pair[1], pair[0]),
    )


class PositionSpace:
    """Gera chaves de posição estritamente entre dois vizinhos"""

    def __init__(self, step=DEFAULT_STEP, decimals: int = DEFAULT_DECIMALS):
        self.step = parse_key(step)
        self.decimals = decimals
        self.quantum = Decimal(1).scaleb(-decimals)

    def quantize(self, value: Decimal) -> Decimal:
        return value.quantize(self.quantum, rounding=ROUND_HALF_EVEN)

    def key_between(self, lower=None, upper=None) -> Decimal:
        """
        Retorna k com lower < k < upper

        Sem lower, k fica um passo antes de upper; sem upper, um passo
        depois de lower. Levanta PrecisionExhausted quando o ponto médio
        arredondado colide com um dos vizinhos.
        """
        lower = parse_key(lower)
        upper = parse_key(upper)

        if lower is not None and upper is not None and lower >= upper:
            raise ValueError(f"Vizinhos fora de ordem: {lower} >= {upper}")

        if lower is None and upper is None:
            candidate = self.step
        elif lower is None:
            candidate = upper - self.step
        elif upper is None:
            candidate = lower + self.step
        else:
            candidate = (lower + upper) / 2

        candidate = self.quantize(candidate)

        if lower is not None and candidate <= lower:
            raise PrecisionExhausted(lower, upper)
        if upper is not None and candidate >= upper:
            raise PrecisionExhausted(lower, upper)

        return candidate

    def spread(self, count: int) -> List[Decimal]:
        """Chaves igualmente espaçadas para rebalancear `count` irmãos"""
        return [self.quantize(self.step * (index + 1)) for index in range(count)]

    def rebalance(self, ordered_ids: Sequence[str]) -> List[Tuple[str, Decimal]]:
        """Atribui chaves novas preservando exatamente a ordem recebida"""
        return list(zip(ordered_ids, self.spread(len(ordered_ids))))

    def is_balanced(self, pairs) -> bool:
        keys = [key for _, key in sort_siblings(pairs)]
        return keys == self.spread(len(keys))


@dataclass(frozen=True)
class Neighborhood:
    """
    Token de concorrência otimista: os irmãos que o cliente viu ao redor
    da posição de destino. Se a vizinhança viva for outra, o movimento
    é rejeitado com OrderingConflict.
    """

    lower_id: Optional[str] = None
    lower_key: Optional[Decimal] = None
    upper_id: Optional[str] = None
    upper_key: Optional[Decimal] = None

    def to_dict(self) -> Dict:
        return {
            'lowerId': self.lower_id,
            'lowerKey': format_key(self.lower_key),
            'upperId': self.upper_id,
            'upperKey': format_key(self.upper_key),
        }

    @classmethod
    def from_dict(cls, data) -> Optional['Neighborhood']:
        if data is None:
            return None
        return cls(
            lower_id=_optional_str(data.get('lowerId')),
            lower_key=parse_key(data.get('lowerKey')),
            upper_id=_optional_str(data.get('upperId')),
            upper_key=parse_key(data.get('upperKey')),
        )


def _optional_str(value) -> Optional[str]:
    return None if value is None else str(value)


def neighborhood_of(siblings, after_id=None, moving_id=None) -> Neighborhood:
    """
    Calcula a vizinhança do espaço logo após `after_id` (None = topo)

    O item em movimento é ignorado. Levanta KeyError se `after_id` não
    estiver entre os irmãos.
    """
    ordered = [pair for pair in sort_siblings(siblings) if pair[0] != moving_id]

    if after_id is None:
        lower = None
        index = 0
    else:
        after_id = str(after_id)
        positions = [item_id for item_id, _ in ordered]
        if after_id not in positions:
            raise KeyError(after_id)
        index = positions.index(after_id)
        lower = ordered[index]
        index += 1

    upper = ordered[index] if index < len(ordered) else None

    return Neighborhood(
        lower_id=lower[0] if lower else None,
        lower_key=lower[1] if lower else None,
        upper_id=upper[0] if upper else None,
        upper_key=upper[1] if upper else None,
    )


def insert_after(ordered_ids: Sequence[str], item_id: str, after_id=None) -> List[str]:
    """Lista de ids com `item_id` logo após `after_id` (None = topo)"""
    result = [other for other in ordered_ids if other != item_id]
    index = 0 if after_id is None else result.index(after_id) + 1
    result.insert(index, item_id)
    return result
