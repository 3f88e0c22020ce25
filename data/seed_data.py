"""
Seed script generating a synthetic CRM dataset for development.

Writes practitioners (with news and visit reports) and upcoming visits to a
JSON file in the format read by ``CRMDataset.from_file``:

    python data/seed_data.py --count 120 --output data/crm_sample.json
"""
import argparse
import json
import random
from datetime import date, timedelta
from pathlib import Path

FIRST_NAMES = [
    "Jean", "Marie", "Pierre", "Sophie", "Michel", "Catherine", "Philippe", "Isabelle",
    "Alain", "Nathalie", "François", "Christine", "Laurent", "Sylvie", "Nicolas", "Claire",
    "Bernard", "Anne", "Olivier", "Hélène", "Thomas", "Julie", "Antoine", "Camille",
]

LAST_NAMES = [
    "Martin", "Bernard", "Dubois", "Thomas", "Robert", "Richard", "Petit", "Durand",
    "Leroy", "Moreau", "Simon", "Laurent", "Lefebvre", "Michel", "Garcia", "David",
    "Bertrand", "Roux", "Vincent", "Fournier", "Morel", "Girard", "André", "Mercier",
    "Blanc", "Guérin", "Boyer", "Garnier", "Chevalier", "Faure", "Rousseau", "Lambert",
]

CITIES = {
    "Lyon": "69003",
    "Villeurbanne": "69100",
    "Grenoble": "38000",
    "Saint-Étienne": "42000",
    "Annecy": "74000",
    "Chambéry": "73000",
    "Valence": "26000",
    "Bourg-en-Bresse": "01000",
}

NEWS_TITLES = {
    "publication": [
        "Étude sur l'observance de l'oxygénothérapie à domicile",
        "Publication sur la réhabilitation respiratoire dans la BPCO",
        "Article sur la ventilation non invasive au long cours",
    ],
    "conference": [
        "Intervention au congrès de pneumologie de langue française",
        "Table ronde sur le parcours de soins BPCO",
    ],
    "award": ["Prix de la recherche clinique régionale"],
    "news": ["Ouverture d'une consultation du sommeil", "Arrivée d'un nouvel associé au cabinet"],
}

VISIT_SUMMARIES = {
    "positive": [
        "Très intéressé par le télésuivi, souhaite équiper deux nouveaux patients.",
        "Satisfait du délai d'installation, demande de la documentation patient.",
    ],
    "neutral": [
        "Échange cordial, pas de nouveau patient ce trimestre.",
        "Demande des précisions sur les conditions de remboursement.",
    ],
    "negative": [
        "Se plaint de délais de livraison, évoque un prestataire concurrent.",
        "Peu disponible, visite écourtée.",
    ],
}


def generate_practitioner(index: int, today: date) -> dict:
    specialty = "Pneumologue" if random.random() < 0.3 else "Médecin généraliste"
    vingtile = random.randint(1, 20)
    is_kol = specialty == "Pneumologue" and vingtile <= 5 and random.random() < 0.6
    base_volume = 60000 if specialty == "Pneumologue" else 15000
    volume = round(base_volume * (21 - vingtile) / 20 * random.uniform(0.6, 1.4), -2)
    loyalty = round(random.uniform(2.0, 10.0), 1)
    city = random.choice(list(CITIES))

    last_visit = None
    if random.random() > 0.08:
        last_visit = today - timedelta(days=random.randint(3, 200))
    days = (today - last_visit).days if last_visit else 999
    churn_risk = "high" if loyalty < 4 and days > 60 else "medium" if loyalty < 6 else "low"

    news = []
    for _ in range(random.randint(0, 3 if is_kol else 1)):
        news_type = random.choice(list(NEWS_TITLES))
        news.append({
            "date": (today - timedelta(days=random.randint(5, 300))).isoformat(),
            "type": news_type,
            "title": random.choice(NEWS_TITLES[news_type]),
            "summary": "",
        })

    visits = []
    if last_visit:
        for offset in range(random.randint(1, 3)):
            sentiment = random.choices(["positive", "neutral", "negative"], weights=[0.5, 0.35, 0.15])[0]
            visits.append({
                "date": (last_visit - timedelta(days=offset * random.randint(30, 90))).isoformat(),
                "summary": random.choice(VISIT_SUMMARIES[sentiment]),
                "sentiment": sentiment,
                "actions": [],
            })

    first_name = random.choice(FIRST_NAMES)
    last_name = random.choice(LAST_NAMES)
    return {
        "id": f"pr_{index:04d}",
        "title": "Dr",
        "firstName": first_name,
        "lastName": last_name,
        "specialty": specialty,
        "isKOL": is_kol,
        "vingtile": vingtile,
        "city": city,
        "postalCode": CITIES[city],
        "address": f"{random.randint(1, 120)} rue de la République",
        "phone": f"04 {random.randint(10, 99)} {random.randint(10, 99)} {random.randint(10, 99)} {random.randint(10, 99)}",
        "email": f"{first_name[0].lower()}.{last_name.lower()}@example.fr",
        "volumeL": volume,
        "patientCount": random.randint(5, 80 if specialty == "Pneumologue" else 25),
        "loyaltyScore": loyalty,
        "trend": random.choices(["up", "stable", "down"], weights=[0.35, 0.45, 0.2])[0],
        "churnRisk": churn_risk,
        "lastVisitDate": last_visit.isoformat() if last_visit else None,
        "visitCount": random.randint(0, 25) if last_visit else 0,
        "aiSummary": "",
        "nextBestAction": "",
        "news": news,
        "visits": visits,
    }


def generate_upcoming_visits(practitioners: list, today: date, count: int) -> list:
    visits = []
    for i, p in enumerate(random.sample(practitioners, min(count, len(practitioners)))):
        visits.append({
            "id": f"uv_{i:04d}",
            "practitionerId": p["id"],
            "date": (today + timedelta(days=random.randint(0, 21))).isoformat(),
            "time": f"{random.randint(8, 17):02d}:{random.choice(['00', '30'])}",
            "type": random.choices(["scheduled", "tentative"], weights=[0.8, 0.2])[0],
            "notes": "",
        })
    return visits


def main():
    parser = argparse.ArgumentParser(description="Generate a synthetic CRM dataset")
    parser.add_argument("--count", type=int, default=120, help="Number of practitioners")
    parser.add_argument("--visits", type=int, default=15, help="Number of upcoming visits")
    parser.add_argument("--seed", type=int, default=42)
    parser.add_argument("--output", type=Path, default=Path(__file__).parent / "crm_sample.json")
    args = parser.parse_args()

    random.seed(args.seed)
    today = date.today()

    print("Generating CRM dataset...")
    print("-" * 50)
    practitioners = [generate_practitioner(i + 1, today) for i in range(args.count)]
    print(f"[OK] Generated {len(practitioners)} practitioners")
    upcoming = generate_upcoming_visits(practitioners, today, args.visits)
    print(f"[OK] Generated {len(upcoming)} upcoming visits")

    args.output.write_text(
        json.dumps({"practitioners": practitioners, "upcomingVisits": upcoming}, ensure_ascii=False, indent=2),
        encoding="utf-8",
    )
    print("-" * 50)
    print(f"[OK] Dataset written to {args.output}")


if __name__ == "__main__":
    main()
