# core/types/result.py
"""
Minimal Rust-style Result type for infrastructure operations that must not raise.

Usage:
    match parse_trigger_event(name, data):
        case Ok(event):
            ...
        case Err(error):
            ...
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeGuard, TypeVar

T = TypeVar('T')
E = TypeVar('E')

@dataclass(slots=True, frozen=True)
class Ok(Generic[T]):
    ok_value: T

@dataclass(slots=True, frozen=True)
class Err(Generic[E]):
    err_value: E

type Result[T, E] = Ok[T] | Err[E]

def is_ok(result: Result[T, E]) -> TypeGuard[Ok[T]]:
    return isinstance(result, Ok)

def is_err(result: Result[T, E]) -> TypeGuard[Err[E]]:
    return isinstance(result, Err)
