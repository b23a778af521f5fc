import argparse
import random
import time
from datetime import datetime, timedelta, timezone

import requests

import db

BASE_URL = "http://127.0.0.1:8000"

REGIONS = ["North", "South", "Riverside"]
SCHOOLS_PER_REGION = 2
GRADES = ["2nd grade", "5th grade", "9th grade"]
STUDENTS_PER_CLASS = 8
FIRST_NAMES = ["Ana", "Bruno", "Carla", "Davi", "Elisa", "Felipe", "Gabriela", "Heitor", "Iara", "Joao"]
LAST_NAMES = ["Souza", "Lima", "Costa", "Oliveira", "Pereira", "Almeida", "Ribeiro"]

SUBJECTS_BY_GRADE = {
    "2nd grade": ("lp", "mat"),
    "5th grade": ("lp", "mat"),
    "9th grade": ("lp", "mat", "ch", "cn"),
}


def random_name():
    return f"{random.choice(FIRST_NAMES)} {random.choice(LAST_NAMES)}"


def seed_clean_data(school_year):
    """Regions, schools, classes and students with consistent results."""
    students = []
    code = 1000
    for region_name in REGIONS:
        region_id = db.insert_region(region_name, code=region_name[:2].upper())
        for n in range(SCHOOLS_PER_REGION):
            school_id = db.insert_school(f"{region_name} School {n + 1}", region_id)
            for grade in GRADES:
                class_id = db.insert_class(f"{grade[0]}{chr(65 + n)}", school_id, grade=grade,
                                           school_year=school_year)
                for _ in range(STUDENTS_PER_CLASS):
                    code += 1
                    student_id = db.insert_student(random_name(), f"S{code}", school_id, class_id,
                                                   grade=grade, school_year=school_year)
                    students.append((student_id, school_id, class_id, grade))
    print(f"Seeded {len(students)} students across {len(REGIONS) * SCHOOLS_PER_REGION} schools")
    return students


def seed_divergences(students, school_year):
    """Plant one example of each fixable problem."""
    student_id, school_id, class_id, grade = students[0]
    base = {"school_id": school_id, "class_id": class_id, "school_year": school_year,
            "grade": "5th grade", "attendance": "P"}

    # medias_inconsistentes: 6, 8 and an essay of 8 average 7.33
    db.insert_consolidated_result(student_id=student_id, score_lp=6, score_mat=8, essay_score=8,
                                  average=5.0, learning_level="Adequate", **base)
    # nivel_aprendizagem_errado
    db.insert_consolidated_result(student_id=students[1][0], score_lp=9, score_mat=9, essay_score=9,
                                  average=9.0, learning_level="Basic", **base)
    # notas_fora_range
    db.insert_consolidated_result(student_id=students[2][0], score_lp=12.5, score_mat=7, **base)
    # presenca_inconsistente
    db.insert_consolidated_result(student_id=students[3][0], total_correct_lp=5,
                                  **{**base, "attendance": "F"})
    # alunos_duplicados and nome_codigo_divergente
    db.insert_student("Ana Souza", "S1001", school_id, class_id, grade=grade, school_year=school_year)
    # resultados_orfaos
    db.insert_exam_result(student_id=999999, subject="lp", school_year=school_year, correct=1)
    # serie_nao_configurada
    db.insert_student(random_name(), "S9001", school_id, grade="7th grade", school_year=school_year)
    # ano_letivo_invalido
    db.insert_student(random_name(), "S9002", school_id, class_id, grade=grade, school_year="24")
    # importacoes_erro_pendente
    stale = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat()
    db.insert_import("results_march.csv", "error", error_rows=12, user_name="import-bot")
    db.insert_import("results_april.csv", "processing", created_at=stale, user_name="import-bot")
    # questoes_sem_gabarito and questoes_nao_utilizadas
    db.insert_question(code="Q-LP-01", description="Reading comprehension", subject="lp", grade="5")
    # turmas_vazias
    db.insert_class("Empty", school_id, grade="5th grade", school_year=school_year)
    print("Planted sample divergences")


def seed_answers(students, school_year):
    for student_id, school_id, _, grade in students[10:40]:
        for subject in SUBJECTS_BY_GRADE[grade]:
            for _ in range(5):
                db.insert_exam_result(student_id=student_id, school_id=school_id, subject=subject,
                                      school_year=school_year, grade=grade, correct=random.random() < 0.6)


def test_connection():
    try:
        r = requests.get(f"{BASE_URL}/grade-configs", timeout=5)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def run_detection():
    r = requests.post(f"{BASE_URL}/divergences/run", timeout=60)
    if not r.ok:
        print(f"Detection failed: {r.status_code}")
        return None
    report = r.json()
    print(report["message"])
    for item in report["divergences"]:
        print(f"  [{item['severity']}] {item['type']}: {item['count']}")
    return report


def apply_unattended_fixes(report):
    headers = {"X-User-Id": "generator", "X-User-Name": "Test data generator"}
    for item in report["divergences"]:
        if not item["auto_fixable"]:
            continue
        r = requests.post(f"{BASE_URL}/divergences/fix", json={"type": item["type"], "fix_all": True},
                          headers=headers, timeout=60)
        if r.ok:
            result = r.json()
            print(f" → {item['type']}: {result['corrected']} corrected, {result['errors']} errors")
        else:
            print(f" → {item['type']}: error {r.status_code}")
        time.sleep(0.2)


def run_tests(fix):
    if not test_connection():
        return

    report = run_detection()
    if report is None or not fix:
        return

    apply_unattended_fixes(report)
    run_detection()

    r = requests.get(f"{BASE_URL}/divergences/history", params={"limit": 100}, timeout=30)
    if r.ok:
        print(f"History entries: {r.json()['total']}")
    else:
        print("Failed to get history")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Seed sample exam data and exercise the integrity service")
    parser.add_argument("--school-year", default=str(datetime.now().year))
    parser.add_argument("--seed", type=int, default=None, help="Random seed for reproducible data")
    parser.add_argument("--skip-seed", action="store_true", help="Only talk to the running server")
    parser.add_argument("--no-server", action="store_true", help="Only seed the local database")
    parser.add_argument("--fix", action="store_true", help="Apply every unattended correction")
    args = parser.parse_args(argv)

    if args.seed is not None:
        random.seed(args.seed)

    if not args.skip_seed:
        db.init()
        students = seed_clean_data(args.school_year)
        seed_answers(students, args.school_year)
        seed_divergences(students, args.school_year)
        print(f"Row counts: {db.table_counts()}")

    if not args.no_server:
        run_tests(args.fix)


if __name__ == "__main__":
    main()
