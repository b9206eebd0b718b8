# pipeline_app.py
# -------------------------------------------------------------
# Simulador didático de pipeline de 5 estágios com hazards
# Implementado em Python + Streamlit (interface gráfica)
# -------------------------------------------------------------
# Principais recursos:
# - Instruções tipo R (ADD, SUB, ...), I (LW, SW) e B (BEQ, BNE)
# - Hazards de dados (RAW), controle e estruturais, explicados ciclo a ciclo
# - Forwarding liga/desliga; predição de desvio com 4 estratégias
# - Step, Step Back, rodar N ciclos
# - Métricas: ciclos, stalls, CPI
# - Exportação do estado em JSON
# -------------------------------------------------------------

from __future__ import annotations
import logging
import streamlit as st

from pipeline_core import (
    DEFAULT_PROGRAM,
    MEM_SIZE,
    NUM_REGS,
    STAGES,
    InstructionEditor,
    PipelineSim,
    PredictorStrategy,
    assemble,
    structural_hazards,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s %(message)s")

st.set_page_config(page_title="Simulador de Pipeline (5 estágios)", layout="wide")

st.title("Simulador de Pipeline — 5 estágios + Hazards")

with st.sidebar:
    st.header("Configuração")
    forwarding = st.checkbox("Forwarding", value=True)
    prediction = st.checkbox("Predição de desvio", value=True)
    strategy = st.selectbox(
        "Estratégia de predição",
        list(PredictorStrategy),
        index=list(PredictorStrategy).index(PredictorStrategy.ONE_BIT),
        format_func=lambda s: s.label,
    )

    st.markdown("---")
    st.subheader("Estado inicial")
    init_regs = st.text_input(f"Registradores (R0..R{NUM_REGS - 1}, separados por vírgula)", "")

    st.markdown("---")
    runN = st.number_input("Rodar N ciclos", 1, 1000, 5)

# Estado na sessão
if "editor" not in st.session_state:
    st.session_state.editor = InstructionEditor(assemble(DEFAULT_PROGRAM))
if "sim" not in st.session_state:
    st.session_state.sim = PipelineSim(st.session_state.editor.pending)

editor: InstructionEditor = st.session_state.editor
sim: PipelineSim = st.session_state.sim

# Toggles valem a partir do próximo ciclo
sim.set_forwarding(forwarding)
sim.set_prediction(prediction)
sim.set_strategy(strategy)

# ==========================
# Edição do programa
# ==========================
st.subheader("Programa (edição)")
ed1, ed2 = st.columns([2, 3])
with ed1:
    kind = st.selectbox("Tipo", ["R", "I", "B"])
    text = st.text_input("Texto da instrução", "ADD R1, R2, R3")
    f1, f2, f3 = st.columns(3)
    if kind == "R":
        fields = {
            "rd": int(f1.number_input("rd", 0, NUM_REGS - 1, 1)),
            "rs": int(f2.number_input("rs", 0, NUM_REGS - 1, 2)),
            "rt": int(f3.number_input("rt", 0, NUM_REGS - 1, 3)),
        }
    elif kind == "I":
        fields = {
            "rt": int(f1.number_input("rt", 0, NUM_REGS - 1, 7)),
            "base": int(f2.number_input("base", 0, NUM_REGS - 1, 1)),
            "offset": int(f3.number_input("offset", -MEM_SIZE, MEM_SIZE, 0)),
        }
    else:
        fields = {
            "rs": int(f1.number_input("rs", 0, NUM_REGS - 1, 4)),
            "rt": int(f2.number_input("rt", 0, NUM_REGS - 1, 6)),
        }

    ids = [i.id for i in editor.pending]
    target = st.selectbox("Instrução (id) para editar/remover", ids) if ids else None

    b1, b2, b3 = st.columns(3)
    try:
        if b1.button("Adicionar"):
            editor.add(kind, text, **fields)
        if b2.button("Atualizar") and target is not None:
            editor.update(target, kind, text, **fields)
        if b3.button("Remover") and target is not None:
            editor.delete(target)
    except ValueError as e:
        st.error(f"Erro na edição: {e}")

with ed2:
    asm = st.text_area("Ou cole o programa (ASM didático)", value=DEFAULT_PROGRAM, height=180)
    if st.button("Carregar ASM na edição"):
        try:
            editor.load_text(asm)
        except ValueError as e:
            st.error(f"Erro na montagem: {e}")

    st.dataframe([{"id": i.id, "tipo": i.kind, "instr": i.text} for i in editor.pending], use_container_width=True)

if st.button("Aplicar programa & Resetar", type="primary"):
    editor.apply(sim)
    if init_regs.strip():
        try:
            sim.load_initial_state(registers=[int(x.strip()) for x in init_regs.split(",")])
        except ValueError as e:
            st.warning(f"Registradores iniciais inválidos: {e}")

st.markdown("---")

# Controles de execução
c1, c2, c3, c4 = st.columns([1, 1, 1, 2])
if c1.button("Step (1 ciclo)"):
    sim.step()
if c2.button("Step Back"):
    if not sim.step_back():
        st.info("Nada para desfazer.")
if c3.button(f"Rodar {runN} ciclos"):
    sim.run(int(runN))

# Métricas
st.subheader("Métricas")
st.write(sim.metrics())

# ==========================
# Visualizações de estado
# ==========================
st.markdown(f"### Pipeline (ciclo {sim.cycle})")
occ = sim.occupancy()
st.dataframe([{stage: "; ".join(occ[stage]) or "-" for stage in STAGES}], use_container_width=True)
for stage in structural_hazards(occ):
    st.warning(f"Hazard estrutural: mais de uma instrução em {stage}")

colA, colB = st.columns(2)
with colA:
    st.markdown(f"### Registradores (R0..R{NUM_REGS - 1})")
    st.dataframe([{f"R{i}": v for i, v in enumerate(sim.registers)}], use_container_width=True)

    st.markdown("### Explicações de hazards")
    if sim.explanations:
        for e in sim.explanations:
            st.write("• ", e)
    else:
        st.write("(sem eventos)")

with colB:
    st.markdown(f"### Memória (M0..M{MEM_SIZE - 1})")
    st.dataframe([{f"M{i}": v for i, v in enumerate(sim.memory)}], use_container_width=True)

    st.markdown("### Log de execução")
    if sim.exec_log:
        st.code("\n".join(sim.exec_log))
    else:
        st.write("(vazio)")

st.markdown("### Resultados do write-back")
st.dataframe(
    [{"ciclo": r.cycle, "instr": r.instruction, "resultado": r.result} for r in sim.wb_results],
    use_container_width=True,
)

st.markdown("### Programa ativo")
st.dataframe([{"PC": i, "Instr": str(instr)} for i, instr in enumerate(sim.program)], use_container_width=True)

st.markdown("### Exportar")
export_json = sim.export().to_json()
st.download_button("Baixar JSON", export_json, file_name="pipeline_export.json", mime="application/json")
with st.expander("Ver JSON exportado"):
    st.code(export_json, language="json")

st.markdown("---")
st.caption("v1 — Simulador didático: registradores e memória não são alterados pela execução; o objetivo é visualizar onde cada instrução está no pipeline e quais hazards surgem.")
