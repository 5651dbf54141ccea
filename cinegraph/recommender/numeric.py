"""
Numerical backend used by the sequence model and the vector similarity code.

Everything that touches tensors goes through a backend object so the rest of
the recommender works on plain python lists and floats.
"""
from __future__ import annotations

from typing import Any, List, Sequence, Tuple
import logging

import torch

logger = logging.getLogger(__name__)


class TorchBackend:
    name = "torch"

    def __init__(self, device: str = "cpu"):
        self.device = torch.device(device)

    def tensor(self, values: Any, dtype: torch.dtype = torch.float32) -> torch.Tensor:
        return torch.as_tensor(values, dtype=dtype, device=self.device)

    def dot(self, a: Sequence[float], b: Sequence[float]) -> float:
        return float(torch.dot(self.tensor(a, torch.float64), self.tensor(b, torch.float64)).item())

    def norm(self, a: Sequence[float]) -> float:
        return float(torch.linalg.vector_norm(self.tensor(a, torch.float64)).item())

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        """dot(a,b) / (|a| * |b|); 0.0 for empty, zero or mismatched vectors."""
        if not a or not b:
            return 0.0
        if len(a) != len(b):
            logger.warning("cosine_similarity on vectors of different size (%d vs %d)", len(a), len(b))
            return 0.0

        ta = self.tensor(a, torch.float64)
        tb = self.tensor(b, torch.float64)
        na = torch.linalg.vector_norm(ta)
        nb = torch.linalg.vector_norm(tb)
        if float(na) == 0.0 or float(nb) == 0.0:
            return 0.0

        sim = float((torch.dot(ta, tb) / (na * nb)).item())
        return max(-1.0, min(sim, 1.0))

    def softmax(self, values: Sequence[float]) -> List[float]:
        return torch.softmax(self.tensor(values, torch.float64), dim=0).tolist()

    def argmax(self, values: Sequence[float]) -> int:
        return int(torch.argmax(self.tensor(values)).item())

    def infer(self, model: torch.nn.Module, batch: Sequence[Any]) -> Tuple[List[Any], ...]:
        """
        Batched forward pass without gradients.
        Returns every model output converted to python lists.
        """
        x = self.tensor(batch)
        model.eval()
        with torch.no_grad():
            out = model(x)
        if isinstance(out, torch.Tensor):
            out = (out,)
        return tuple(o.detach().cpu().tolist() for o in out)


default_backend = TorchBackend()


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    return default_backend.cosine_similarity(a, b)
