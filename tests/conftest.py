"""
Fixtures compartilhadas pela suíte do simulador de pipeline.
"""

import pytest

from pipeline_core import BType, IType, RType


@pytest.fixture
def example_program():
    return [
        RType(id=1, text="ADD R1, R2, R3", rd=1, rs=2, rt=3),
        RType(id=2, text="SUB R4, R1, R5", rd=4, rs=1, rt=5),
        BType(id=3, text="BEQ R4, R6, LABEL", rs=4, rt=6, label="LABEL"),
        IType(id=4, text="LW R7, 0(R1)", rt=7, base=1, offset=0),
        IType(id=5, text="SW R7, 4(R1)", rt=7, base=1, offset=4),
    ]


@pytest.fixture
def independent_program():
    # sem dependências e sem desvios
    return [
        RType(id=n, text=f"ADD R{10 + n}, R1, R2", rd=10 + n, rs=1, rt=2)
        for n in range(1, 5)
    ]
