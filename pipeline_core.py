# pipeline_core.py
# -------------------------------------------------------------
# Núcleo do simulador didático de pipeline clássico de 5 estágios
# (IF, ID, EX, MEM, WB) com explicação de hazards
# (sem interface gráfica)
# -------------------------------------------------------------

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Set, Tuple
import copy
import json
import logging
import re

logger = logging.getLogger(__name__)

# ==========================
# Parâmetros padrão
# ==========================
STAGES = ["IF", "ID", "EX", "MEM", "WB"]
WB_STAGE = len(STAGES) - 1

NUM_REGS = 32  # R0..R31
MEM_SIZE = 64  # memória só para visualização

FLUSH_CYCLES = 2  # ciclos de dreno após erro de predição / stall de controle

DEFAULT_OPTIONS = {
    "forwarding": True,
    "prediction": True,
    "strategy": "1-bit",
    "record_history": True,
}

R_OPS = ("ADD", "SUB", "AND", "OR", "XOR", "NOR", "SLT", "MUL", "DIV")
I_OPS = ("LW", "SW")
B_OPS = ("BEQ", "BNE")


# ==========================
# Classes de dados
# ==========================
@dataclass(frozen=True)
class Instruction:
    id: int
    text: str

    kind: ClassVar[str] = "?"

    @property
    def mnemonic(self) -> str:
        parts = self.text.split()
        return parts[0].upper() if parts else ""

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"id": self.id, "text": self.text, "type": self.kind}
        for f in fields(self):
            if f.name not in out:
                out[f.name] = getattr(self, f.name)
        return out

    def __str__(self):
        return self.text


@dataclass(frozen=True)
class RType(Instruction):
    rd: int = 0
    rs: int = 0
    rt: int = 0

    kind: ClassVar[str] = "R"


@dataclass(frozen=True)
class IType(Instruction):
    rt: int = 0
    base: int = 0
    offset: int = 0

    kind: ClassVar[str] = "I"


@dataclass(frozen=True)
class BType(Instruction):
    rs: int = 0
    rt: int = 0
    label: Optional[str] = None

    kind: ClassVar[str] = "B"


INSTRUCTION_TYPES = {cls.kind: cls for cls in (RType, IType, BType)}


def make_instruction(kind: str, id: int, text: str, **operands) -> Instruction:
    """Cria a variante certa a partir do tipo ("R", "I" ou "B")."""
    cls = INSTRUCTION_TYPES.get(kind.upper())
    if cls is None:
        raise ValueError(f"Tipo de instrução inválido: {kind}")
    allowed = {f.name for f in fields(cls)} - {"id", "text"}
    unknown = set(operands) - allowed
    if unknown:
        raise ValueError(f"Campos inválidos para tipo {cls.kind}: {sorted(unknown)}")
    return cls(id=id, text=text, **operands)


@dataclass
class WBResult:
    cycle: int
    instruction: str
    result: str
    registers: List[int]
    memory: List[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cycle": self.cycle,
            "instruction": self.instruction,
            "result": self.result,
            "registers": list(self.registers),
            "memory": list(self.memory),
        }


@dataclass
class Snapshot:
    cycle: int
    registers: List[int]
    memory: List[int]
    instructions: List[Instruction]
    forwarding: bool
    prediction: bool
    explanations: List[str]
    exec_log: List[str]
    wb_results: List[WBResult]
    stalls: int
    predictor_state: Dict[str, Dict[int, Any]]
    flushing: int


@dataclass(frozen=True)
class PipelineExport:
    registers: Tuple[int, ...]
    memory: Tuple[int, ...]
    instructions: Tuple[Mapping[str, Any], ...]
    pipeline_state: Mapping[str, Tuple[str, ...]]
    stalls: int
    cpi: float
    exec_log: Tuple[str, ...]
    wb_results: Tuple[Mapping[str, Any], ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "registers": list(self.registers),
            "memory": list(self.memory),
            "instructions": [dict(i) for i in self.instructions],
            "pipelineState": {st: list(texts) for st, texts in self.pipeline_state.items()},
            "stalls": self.stalls,
            "cpi": self.cpi,
            "execLog": list(self.exec_log),
            "wbResults": [
                {k: list(v) if isinstance(v, tuple) else v for k, v in r.items()}
                for r in self.wb_results
            ],
        }

    def to_json(self, indent: int = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


# ==========================
# Ocupação do pipeline
# ==========================
def instructions_in_stage(cycle: int, instructions: List[Instruction], stage: int) -> List[Instruction]:
    idx = cycle - stage
    if 0 <= stage < len(STAGES) and 0 <= idx < len(instructions):
        return [instructions[idx]]
    return []


def pipeline_occupancy(cycle: int, instructions: List[Instruction]) -> Dict[str, List[str]]:
    state: Dict[str, List[str]] = {stage: [] for stage in STAGES}
    for idx, inst in enumerate(instructions):
        stage_idx = cycle - idx
        if 0 <= stage_idx < len(STAGES):
            state[STAGES[stage_idx]].append(inst.text)
    return state


def structural_hazards(occupancy: Dict[str, List[str]]) -> List[str]:
    """Estágios com mais de uma instrução no mesmo ciclo."""
    return [stage for stage in STAGES if len(occupancy.get(stage, [])) > 1]


# ==========================
# Detecção de hazards
# ==========================
def write_set(inst: Instruction) -> Set[int]:
    if inst.kind == "R":
        return {inst.rd}
    if inst.kind == "I" and inst.mnemonic == "LW":
        return {inst.rt}
    return set()


def read_set(inst: Instruction) -> Set[int]:
    # offset do tipo I não entra: o modelo é didático
    if inst.kind == "R":
        return {inst.rs, inst.rt}
    if inst.kind == "I":
        return {inst.rt, inst.base}
    return set()


def detect_raw(prior: Optional[Instruction], current: Optional[Instruction]) -> bool:
    if prior is None or current is None:
        return False
    return bool(write_set(prior) & read_set(current))


def is_control_hazard(inst: Instruction) -> bool:
    return inst.kind == "B"


def is_branch_taken(inst: Instruction, registers: List[int]) -> bool:
    # Apenas BEQ é resolvido; qualquer outro desvio é "não tomado"
    if inst.kind == "B" and inst.mnemonic == "BEQ":
        return registers[inst.rs] == registers[inst.rt]
    return False


# ==========================
# Preditor de desvio
# ==========================
class PredictorStrategy(str, Enum):
    ALWAYS_TAKEN = "always-taken"
    ALWAYS_NOT_TAKEN = "always-not-taken"
    ONE_BIT = "1-bit"
    TWO_BIT = "2-bit"

    @property
    def label(self) -> str:
        return {
            "always-taken": "Always Taken",
            "always-not-taken": "Always Not Taken",
            "1-bit": "1-bit History",
            "2-bit": "2-bit Saturating Counter",
        }[self.value]


class BranchPredictor:
    """Preditor por id de instrução; a estratégia pode ser trocada entre ciclos."""

    def __init__(self, strategy: PredictorStrategy = PredictorStrategy.ONE_BIT):
        self.strategy = PredictorStrategy(strategy)
        self.history: Dict[int, bool] = {}  # 1-bit: último resultado
        self.counters: Dict[int, int] = {}  # 2-bit: 0..3, inicia em 1

    def predict(self, inst: Instruction) -> bool:
        if self.strategy is PredictorStrategy.ALWAYS_TAKEN:
            return True
        if self.strategy is PredictorStrategy.ALWAYS_NOT_TAKEN:
            return False
        if self.strategy is PredictorStrategy.ONE_BIT:
            return self.history.get(inst.id, False)
        return self.counters.get(inst.id, 1) > 1

    def update(self, inst: Instruction, taken: bool):
        if self.strategy is PredictorStrategy.ONE_BIT:
            self.history[inst.id] = taken
        elif self.strategy is PredictorStrategy.TWO_BIT:
            counter = self.counters.get(inst.id, 1)
            if taken:
                self.counters[inst.id] = min(3, counter + 1)
            else:
                self.counters[inst.id] = max(0, counter - 1)

    def state(self) -> Dict[str, Dict[int, Any]]:
        return {"history": dict(self.history), "counters": dict(self.counters)}

    def load_state(self, state: Dict[str, Dict[int, Any]]):
        self.history = dict(state.get("history", {}))
        self.counters = dict(state.get("counters", {}))

    def reset(self):
        self.history = {}
        self.counters = {}


# ==========================
# Resultado do write-back
# ==========================
def describe_result(inst: Instruction, registers: List[int]) -> str:
    if inst.kind == "R":
        return f"R{inst.rd} = {registers[inst.rs]} op {registers[inst.rt]}"
    if inst.kind == "I":
        if inst.mnemonic == "LW":
            return f"R{inst.rt} loaded from M[{registers[inst.base]} + {inst.offset}]"
        if inst.mnemonic == "SW":
            return f"M[{registers[inst.base]} + {inst.offset}] = R{inst.rt}"
        return f"{inst.text} completed"
    if inst.kind == "B":
        return f"Branch evaluated: {is_branch_taken(inst, registers)}"
    return f"{inst.text} completed"


# ----------- Causa do flush (melhor esforço) -----------
FLUSH_CAUSE_RE = re.compile(r'"([^"]+)"')
UNKNOWN_CAUSE = "unknown"


def infer_flush_cause(explanations: List[str]) -> str:
    for text in reversed(explanations):
        if "Misprediction" in text or "Control hazard resolved" in text:
            m = FLUSH_CAUSE_RE.search(text)
            return m.group(1) if m else UNKNOWN_CAUSE
    return UNKNOWN_CAUSE


# ==========================
# Histórico (Step Back)
# ==========================
class History:
    """Pilha de snapshots: o último salvo é o primeiro restaurado."""

    def __init__(self):
        self._stack: List[Snapshot] = []

    def push(self, snap: Snapshot):
        self._stack.append(snap)

    def peek(self) -> Optional[Snapshot]:
        return self._stack[-1] if self._stack else None

    def pop(self) -> Optional[Snapshot]:
        if not self._stack:
            return None
        return self._stack.pop()

    def clear(self):
        self._stack = []

    def __len__(self):
        return len(self._stack)


# ==========================
# Núcleo do simulador
# ==========================
class PipelineSim:
    def __init__(self, program: List[Instruction], options: Optional[Dict[str, Any]] = None):
        opts = dict(DEFAULT_OPTIONS)
        opts.update(options or {})

        self.program: List[Instruction] = list(program)

        # Estado arquitetural (nunca alterado pela execução)
        self.registers = [0] * NUM_REGS
        self.memory = [0] * MEM_SIZE

        # Controle
        self.forwarding = bool(opts["forwarding"])
        self.prediction = bool(opts["prediction"])
        self.record_history = bool(opts["record_history"])
        self.pred = BranchPredictor(opts["strategy"])

        self.cycle = 0
        self.stalls = 0
        self.flushing = 0  # ciclos de dreno restantes

        # Logs (só crescem)
        self.explanations: List[str] = []
        self.exec_log: List[str] = []
        self.wb_results: List[WBResult] = []

        self.history = History()

    # ----------- Configuração externa -----------
    def set_forwarding(self, enabled: bool):
        self.forwarding = bool(enabled)

    def set_prediction(self, enabled: bool):
        self.prediction = bool(enabled)

    def set_strategy(self, strategy: PredictorStrategy):
        self.pred.strategy = PredictorStrategy(strategy)

    def apply_instructions(self, program: List[Instruction]):
        self.program = list(program)
        self.registers = [0] * NUM_REGS
        self.memory = [0] * MEM_SIZE
        self.cycle = 0
        self.stalls = 0
        self.flushing = 0
        self.explanations = []
        self.exec_log = []
        self.wb_results = []
        self.pred.reset()
        self.history.clear()
        logger.info("Applied %d instructions; simulator reset", len(self.program))

    def load_initial_state(self, registers: Optional[List[int]] = None, memory: Optional[List[int]] = None):
        if registers is not None:
            if len(registers) != NUM_REGS:
                raise ValueError(f"Forneça {NUM_REGS} valores (R0..R{NUM_REGS - 1})")
            self.registers = [int(v) for v in registers]
        if memory is not None:
            if len(memory) != MEM_SIZE:
                raise ValueError(f"Forneça {MEM_SIZE} valores de memória")
            self.memory = [int(v) for v in memory]

    # ----------- Visões somente leitura -----------
    def occupancy(self) -> Dict[str, List[str]]:
        return pipeline_occupancy(self.cycle, self.program)

    def cpi(self) -> float:
        if not self.program:
            return 0.0
        return (self.cycle + self.stalls) / len(self.program)

    @property
    def strategy_label(self) -> str:
        return self.pred.strategy.label

    # ----------- Explicações e log -----------
    def _explain(self, text: str) -> str:
        self.explanations.append(text)
        return text

    def _log(self, text: str):
        stamp = datetime.now().strftime("%H:%M:%S")
        self.exec_log.append(f"[{stamp}] {text}")

    # ----------- Dreno (flush) -----------
    def _drain(self) -> str:
        cause = infer_flush_cause(self.explanations)
        occ = self.occupancy()
        flushed = [text for stage in STAGES[:WB_STAGE] for text in occ[stage]]
        listing = ", ".join(flushed) if flushed else "none"
        explanation = self._explain(
            f'Flushing pipeline at cycle {self.cycle} (caused by "{cause}"); '
            f"flushed instructions: {listing}."
        )
        self.cycle += 1
        self.flushing -= 1
        logger.debug("Flush cycle, %d remaining", self.flushing)
        return explanation

    def _start_flush(self, explanation: str) -> str:
        self.stalls += FLUSH_CYCLES
        self.flushing = FLUSH_CYCLES
        logger.info("Flush scheduled at cycle %d", self.cycle)
        return self._explain(explanation)

    # ----------- Write-back -----------
    def _write_back(self):
        for inst in instructions_in_stage(self.cycle, self.program, WB_STAGE):
            self.wb_results.append(WBResult(
                cycle=self.cycle,
                instruction=inst.text,
                result=describe_result(inst, self.registers),
                registers=list(self.registers),
                memory=list(self.memory),
            ))

    # ----------- Um ciclo -----------
    def step(self) -> str:
        if self.record_history:
            self.history.push(self.snapshot())

        if self.flushing > 0:
            return self._drain()

        explanation = ""
        idx = self.cycle
        if 0 < idx < len(self.program):
            current = self.program[idx]
            previous = self.program[idx - 1]

            if not self.forwarding and detect_raw(previous, current):
                self.stalls += 1
                logger.debug("RAW stall at cycle %d", self.cycle)
                return self._explain(
                    f'Stalling at cycle {self.cycle} due to RAW hazard between '
                    f'"{previous.text}" and "{current.text}".'
                )

            if is_control_hazard(current):
                taken = is_branch_taken(current, self.registers)
                predicted = self.pred.predict(current)
                self.pred.update(current, taken)

                if self.prediction and predicted != taken:
                    return self._start_flush(
                        f'Misprediction at cycle {self.cycle} on "{current.text}": '
                        f'predicted {"taken" if predicted else "not taken"}, '
                        f'actual was {"taken" if taken else "not taken"}. Flushing pipeline.'
                    )
                if self.prediction:
                    explanation = f'Branch prediction correct at cycle {self.cycle} for "{current.text}".'
                else:
                    return self._start_flush(
                        f'Control hazard resolved by stalling at cycle {self.cycle} '
                        f'on "{current.text}". Flushing pipeline.'
                    )

        # Avanço normal
        self._write_back()
        explanation = self._explain(explanation or f"Cycle {self.cycle} executed without stall.")
        occ = self.occupancy()
        busy = ", ".join(f"{st}: {'; '.join(occ[st])}" for st in STAGES if occ[st]) or "pipeline empty"
        self._log(f"Cycle {self.cycle}: {busy}")
        self.cycle += 1
        logger.debug("Advanced to cycle %d", self.cycle)
        return explanation

    def run(self, n: int) -> List[str]:
        return [self.step() for _ in range(n)]

    # ----------- Snapshot / restauração -----------
    def snapshot(self) -> Snapshot:
        return Snapshot(
            cycle=self.cycle,
            registers=list(self.registers),
            memory=list(self.memory),
            instructions=list(self.program),
            forwarding=self.forwarding,
            prediction=self.prediction,
            explanations=list(self.explanations),
            exec_log=list(self.exec_log),
            wb_results=copy.deepcopy(self.wb_results),
            stalls=self.stalls,
            predictor_state=self.pred.state(),
            flushing=self.flushing,
        )

    def restore(self, snap: Snapshot):
        """Substitui o estado vivo pelo snapshot; se ele for o topo do histórico, sai da pilha."""
        if self.history.peek() is snap:
            self.history.pop()
        snap = copy.deepcopy(snap)
        self.cycle = snap.cycle
        self.registers = snap.registers
        self.memory = snap.memory
        self.program = snap.instructions
        self.forwarding = snap.forwarding
        self.prediction = snap.prediction
        self.explanations = snap.explanations
        self.exec_log = snap.exec_log
        self.wb_results = snap.wb_results
        self.stalls = snap.stalls
        self.pred.load_state(snap.predictor_state)
        self.flushing = snap.flushing

    def step_back(self) -> bool:
        snap = self.history.pop()
        if snap is None:
            logger.warning("Step back requested with empty history")
            return False
        self.restore(snap)
        logger.info("Stepped back to cycle %d", self.cycle)
        return True

    # ----------- Exportação -----------
    def export(self) -> PipelineExport:
        occ = self.occupancy()
        return PipelineExport(
            registers=tuple(self.registers),
            memory=tuple(self.memory),
            instructions=tuple(MappingProxyType(i.to_dict()) for i in self.program),
            pipeline_state=MappingProxyType({st: tuple(texts) for st, texts in occ.items()}),
            stalls=self.stalls,
            cpi=self.cpi(),
            exec_log=tuple(self.exec_log),
            wb_results=tuple(
                MappingProxyType({
                    "cycle": r.cycle,
                    "instruction": r.instruction,
                    "result": r.result,
                    "registers": tuple(r.registers),
                    "memory": tuple(r.memory),
                })
                for r in self.wb_results
            ),
        )

    # ----------- Métricas -----------
    def metrics(self) -> Dict[str, Any]:
        return {
            "Ciclos": self.cycle,
            "Stalls": self.stalls,
            "CPI": round(self.cpi(), 2),
            "Forwarding": "Ligado" if self.forwarding else "Desligado",
            "Predição de desvio": "Ligada" if self.prediction else "Desligada",
            "Estratégia": self.strategy_label,
            "Ciclos de flush restantes": self.flushing,
        }


# ==========================
# Editor de instruções (sequência pendente)
# ==========================
class InstructionEditor:
    """Sequência em edição; só chega ao simulador via apply()."""

    def __init__(self, program: Optional[List[Instruction]] = None):
        self.pending: List[Instruction] = list(program or [])
        self.selected: Optional[int] = None

    def next_id(self) -> int:
        return max((i.id for i in self.pending), default=0) + 1

    def _index(self, inst_id: int) -> int:
        for i, inst in enumerate(self.pending):
            if inst.id == inst_id:
                return i
        raise ValueError(f"Instrução inexistente: id {inst_id}")

    def add(self, kind: str, text: str, **operands) -> Instruction:
        inst = make_instruction(kind, self.next_id(), text, **operands)
        self.pending.append(inst)
        return inst

    def select(self, inst_id: int) -> Instruction:
        inst = self.pending[self._index(inst_id)]
        self.selected = inst_id
        return inst

    def update(self, inst_id: int, kind: str, text: str, **operands) -> Instruction:
        i = self._index(inst_id)
        inst = make_instruction(kind, inst_id, text, **operands)
        self.pending[i] = inst
        self.selected = None
        return inst

    def delete(self, inst_id: int):
        del self.pending[self._index(inst_id)]
        if self.selected == inst_id:
            self.selected = None

    def load_text(self, text: str):
        self.pending = assemble(text)
        self.selected = None

    def apply(self, sim: PipelineSim):
        sim.apply_instructions(self.pending)


# ==========================
# Montagem simples
# ==========================
LABEL_RE = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*):$")


def parse_reg(tok: str) -> int:
    tok = tok.strip().upper()
    if not tok.startswith("R") or not tok[1:].isdigit():
        raise ValueError(f"Registrador inválido: {tok}")
    n = int(tok[1:])
    if not 0 <= n < NUM_REGS:
        raise ValueError(f"Registrador inválido: {tok}")
    return n


def assemble(text: str) -> List[Instruction]:
    lines = [
        l.split("#")[0].split(";")[0].strip()
        for l in text.splitlines()
    ]
    # linhas de label (ex.: "LOOP:") não geram instrução
    lines = [l for l in lines if l and not LABEL_RE.match(l)]

    out: List[Instruction] = []
    for n, l in enumerate(lines, start=1):
        parts = [p for p in re.split(r"[\s,()]+", l) if p]
        op = parts[0].upper()
        src = " ".join(l.split())

        try:
            if op in R_OPS:
                if len(parts) != 4:
                    raise ValueError(f"Esperado: {op} Rd, Rs, Rt")
                instr = RType(id=n, text=src, rd=parse_reg(parts[1]),
                              rs=parse_reg(parts[2]), rt=parse_reg(parts[3]))
            elif op in I_OPS:
                if len(parts) != 4:
                    raise ValueError(f"Esperado: {op} Rt, offset(Rbase)")
                instr = IType(id=n, text=src, rt=parse_reg(parts[1]),
                              offset=int(parts[2]), base=parse_reg(parts[3]))
            elif op in B_OPS:
                if len(parts) not in (3, 4):
                    raise ValueError(f"Esperado: {op} Rs, Rt[, LABEL]")
                label = parts[3] if len(parts) == 4 else None
                instr = BType(id=n, text=src, rs=parse_reg(parts[1]),
                              rt=parse_reg(parts[2]), label=label)
            else:
                raise ValueError(f"Opcode inválido: {op}")
        except ValueError as e:
            raise ValueError(f"Linha {n} ({l}): {e}") from e

        out.append(instr)

    return out


# ==========================
# Programa exemplo
# ==========================
DEFAULT_PROGRAM = """
# Exemplo didático: dependência RAW, desvio e load/store
ADD R1, R2, R3
SUB R4, R1, R5     # lê R1 logo após o ADD
BEQ R4, R6, LABEL  # com registradores zerados, é tomado
LW R7, 0(R1)
SW R7, 4(R1)
"""
